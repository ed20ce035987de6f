"""
ORM-level immutability and guarded-field enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Two kinds of rows must never be edited through the ORM:

  * Append-only history: stock movements, audit events, status history,
    approval records.  Corrections are new rows (compensating entries),
    never edits.

  * Guarded fields on live entities: ``PurchaseOrder.status``,
    ``PurchaseOrder.order_number``, ``LineItem.quantity_received`` and
    ``Product.stock_quantity``.  Each has exactly one owning service which
    writes it with a compare-and-set UPDATE statement.  A direct attribute
    assignment followed by flush() is the "force it from the console"
    backdoor, and is refused here.

===============================================================================
HOW IT WORKS
===============================================================================

Each protected model is described by an ``ImmutabilityRule``.  Registering
the listeners attaches ``before_update`` / ``before_delete`` mapper events
that compare attribute history against the rule:

    session.flush()
         |
         v
    [before_update] --> rule check --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Bulk ``update()`` statements issued by the owning services do not go
through mapper events, which is what makes them the single trusted path.

``updated_at`` / ``updated_by_id`` are metadata and are always writable.

===============================================================================
USAGE
===============================================================================

    from procure_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()   # once at startup, idempotent

Module ORM files add their own rules with ``add_rule()`` at import time.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event, inspect, select
from sqlalchemy.orm.attributes import get_history

from procure_kernel.exceptions import ImmutabilityViolationError
from procure_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})


@dataclass(frozen=True)
class ImmutabilityRule:
    """
    Protection rule for one ORM model.

    append_only: no column may change and rows may not be deleted.
    guarded_fields: these columns may not change through the ORM.
    frozen_when: called with the row's committed values; when it returns
        True the row behaves as append_only.
    """

    model: type
    entity_type: str
    append_only: bool = False
    guarded_fields: frozenset[str] = frozenset()
    frozen_when: Callable[[dict[str, Any]], bool] | None = None
    allow_delete: bool = True


_rules: dict[type, ImmutabilityRule] = {}
_listeners: dict[type, tuple[Callable, Callable]] = {}
_registered = False


def stored_values(connection: Any, target: Any) -> dict[str, Any]:
    """Column values of ``target`` as currently stored, read on the flush connection."""
    mapper = inspect(target).mapper
    table = mapper.local_table
    row = connection.execute(
        select(table).where(table.c.id == target.id)
    ).mappings().first()
    if row is None:
        return {}
    return {
        attr.key: row[attr.columns[0]]
        for attr in mapper.column_attrs
        if attr.columns[0].table is table
    }


def _changed_columns(target: Any) -> set[str]:
    changed = set()
    for attr in inspect(target).mapper.column_attrs:
        if attr.key in _METADATA_FIELDS:
            continue
        if get_history(target, attr.key).has_changes():
            changed.add(attr.key)
    return changed


def _block(rule: ImmutabilityRule, target: Any, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": rule.entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=rule.entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _is_frozen(rule: ImmutabilityRule, connection: Any, target: Any) -> bool:
    if rule.append_only:
        return True
    if rule.frozen_when is None:
        return False
    return rule.frozen_when(stored_values(connection, target))


def _make_listeners(rule: ImmutabilityRule) -> tuple[Callable, Callable]:
    def before_update(mapper, connection, target):
        changed = _changed_columns(target)
        if not changed:
            return
        if _is_frozen(rule, connection, target):
            _block(
                rule, target, "UPDATE",
                f"{rule.entity_type} records are immutable "
                f"(attempted to change {sorted(changed)})",
            )
        guarded = changed & rule.guarded_fields
        if guarded:
            _block(
                rule, target, "UPDATE",
                f"{sorted(guarded)} may only be changed through the owning service",
            )

    def before_delete(mapper, connection, target):
        if not rule.allow_delete or _is_frozen(rule, connection, target):
            _block(
                rule, target, "DELETE",
                f"{rule.entity_type} records cannot be deleted",
            )

    return before_update, before_delete


def add_rule(rule: ImmutabilityRule) -> None:
    """Add a protection rule; attached immediately if listeners are live."""
    _rules[rule.model] = rule
    if _registered and rule.model not in _listeners:
        _attach(rule)


def _attach(rule: ImmutabilityRule) -> None:
    before_update, before_delete = _make_listeners(rule)
    event.listen(rule.model, "before_update", before_update)
    event.listen(rule.model, "before_delete", before_delete)
    _listeners[rule.model] = (before_update, before_delete)


def _kernel_rules() -> list[ImmutabilityRule]:
    from procure_kernel.models.audit_event import AuditEvent
    from procure_kernel.models.product import Product
    from procure_kernel.models.stock_movement import StockMovement

    return [
        ImmutabilityRule(AuditEvent, "AuditEvent", append_only=True),
        ImmutabilityRule(StockMovement, "StockMovement", append_only=True),
        ImmutabilityRule(
            Product,
            "Product",
            guarded_fields=frozenset({"stock_quantity", "version", "sku"}),
            allow_delete=False,
        ),
    ]


def register_immutability_listeners() -> None:
    """
    Attach listeners for every known rule (idempotent).

    Call after all ORM models are imported and before any writes.
    """
    global _registered
    for rule in _kernel_rules():
        _rules.setdefault(rule.model, rule)
    for rule in _rules.values():
        if rule.model not in _listeners:
            _attach(rule)
    _registered = True
    logger.debug(
        "immutability_listeners_registered",
        extra={"protected_models": sorted(r.entity_type for r in _rules.values())},
    )


def unregister_immutability_listeners() -> None:
    """
    Remove all listeners.

    WARNING: Only for tests that deliberately tamper with rows to verify
    detection (for example audit chain validation).
    """
    global _registered
    for model, (before_update, before_delete) in list(_listeners.items()):
        if event.contains(model, "before_update", before_update):
            event.remove(model, "before_update", before_update)
        if event.contains(model, "before_delete", before_delete):
            event.remove(model, "before_delete", before_delete)
    _listeners.clear()
    _registered = False
