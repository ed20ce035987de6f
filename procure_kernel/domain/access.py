"""
AccessPolicy -- role permissions and approval limits.

The policy is configuration, not code: which roles may perform which
actions, and how much each role may approve.  Pure and immutable.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Self

from procure_kernel.domain.values import Action, ActorRef

ALL_ACTIONS = frozenset(a.value for a in Action)

_MANAGER_ACTIONS = frozenset({
    Action.CREATE.value,
    Action.EDIT.value,
    Action.SUBMIT.value,
    Action.APPROVE.value,
    Action.SEND.value,
    Action.RECEIVE.value,
    Action.CANCEL.value,
    Action.CLOSE.value,
    Action.ADJUST_STOCK.value,
    Action.VIEW_AUDIT_TRAIL.value,
    Action.RESOLVE_ERRORS.value,
})


def _default_permissions() -> dict[str, frozenset[str]]:
    return {
        "admin": ALL_ACTIONS,
        "manager": _MANAGER_ACTIONS,
        "accountant": frozenset({Action.VIEW_AUDIT_TRAIL.value, Action.RESOLVE_ERRORS.value}),
        "cashier": frozenset(),
        "employee": frozenset(),
    }


def _default_limits() -> dict[str, Decimal | None]:
    # None = unlimited
    return {"admin": None, "manager": Decimal("100000")}


@dataclass(frozen=True)
class AccessPolicy:
    """Role -> permitted actions, and role -> approval limit."""

    role_permissions: Mapping[str, frozenset[str]] = field(default_factory=_default_permissions)
    role_approval_limits: Mapping[str, Decimal | None] = field(default_factory=_default_limits)

    @classmethod
    def with_defaults(cls) -> Self:
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """
        Build from ``{"roles": {name: {"actions": [...], "approval_limit": n}}}``.

        ``actions: all`` grants every action; an omitted or null
        approval_limit means the role has no limit.
        """
        permissions: dict[str, frozenset[str]] = {}
        limits: dict[str, Decimal | None] = {}
        for role, spec in (data.get("roles") or {}).items():
            spec = spec or {}
            actions = spec.get("actions") or []
            if actions == "all":
                permissions[role] = ALL_ACTIONS
            else:
                permissions[role] = frozenset(Action(a).value for a in actions)
            if "approval_limit" in spec:
                raw = spec["approval_limit"]
                limits[role] = None if raw is None else Decimal(str(raw))
        return cls(role_permissions=permissions, role_approval_limits=limits)

    def allows(self, actor: ActorRef, action: Action) -> bool:
        return action.value in self.role_permissions.get(actor.role, frozenset())

    def approval_limit_for(self, actor: ActorRef) -> Decimal | None:
        """
        The actor's own limit when set, else the role's.

        Roles without a configured limit that may still approve are
        unlimited; roles that may not approve have a zero limit.
        """
        if actor.approval_limit is not None:
            return actor.approval_limit
        if actor.role in self.role_approval_limits:
            return self.role_approval_limits[actor.role]
        if self.allows(actor, Action.APPROVE):
            return None
        return Decimal("0")
