"""
ApprovalEngine -- multi-level, amount-threshold approval routing.

Responsibility:
    Records one ApprovalRecord per decision, routes decisions the actor is
    not authorized to make to the next level as ``escalated``, and drives
    the order to ``approved`` (final level) or ``rejected`` through the
    state machine.

Architecture position:
    Modules > Purchasing.  Sole creator of ApprovalRecordModel rows.

Invariants enforced:
    - Levels for one order strictly increase: the only decidable level is
      ``max(decided levels) + 1`` (or 1).
    - The amount judged is the order total; an actor whose limit is below
      it never approves, the record is ``escalated`` instead.
    - Only the level's ``approver_role``, or a role whose limit covers it,
      decides a level.
    - The order leaves ``pending_approval`` for ``approved`` only from the
      final level for its total.
    - Records are append-only.

Failure modes:
    - PermissionDeniedError: actor lacks ``approve``, may not sit at the
      level, or escalation past the last configured level.
    - InvalidStatusTransitionError: order not pending approval, or level
      already decided.
    - ApprovalRequiredError: an earlier level is still outstanding.
    - InvalidQuantityError: negative amount.
    - PriceMismatchError: amount differs from the order total.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_non_negative,
    check_permission,
    to_decimal,
)
from procure_kernel.domain.values import Action, ActorRef, ErrorKind
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules.purchasing.config import ApprovalLevel, PurchasingConfig
from procure_modules.purchasing.models import ApprovalDecision, ApprovalStatus, OrderStatus
from procure_modules.purchasing.orm import ApprovalRecordModel
from procure_modules.purchasing.state_machine import (
    OrderStateMachine,
    TransitionSource,
    load_order,
)

logger = get_logger("modules.purchasing.approval")

_AUDIT_ACTION_BY_STATUS = {
    ApprovalStatus.APPROVED: AuditAction.APPROVED,
    ApprovalStatus.REJECTED: AuditAction.REJECTED,
    ApprovalStatus.ESCALATED: AuditAction.ESCALATED,
}


class ApprovalEngine:
    """
    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT notify the next approver.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        state_machine: OrderStateMachine,
        access: AccessPolicy,
        config: PurchasingConfig,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._state_machine = state_machine
        self._access = access
        self._config = config
        self._clock = clock or SystemClock()

    def current_level(self, order_id: UUID) -> int:
        decided = self._session.execute(
            select(func.max(ApprovalRecordModel.level)).where(
                ApprovalRecordModel.order_id == order_id
            )
        ).scalar_one_or_none()
        return (decided or 0) + 1

    def records_for(self, order_id: UUID) -> list[ApprovalRecordModel]:
        return list(
            self._session.execute(
                select(ApprovalRecordModel)
                .where(ApprovalRecordModel.order_id == order_id)
                .order_by(ApprovalRecordModel.level)
            ).scalars()
        )

    def _may_decide_at(self, actor: ActorRef, approval_level: ApprovalLevel) -> bool:
        """The level's own role, or any actor whose limit covers that role's."""
        if actor.role == approval_level.approver_role:
            return True
        held = self._access.approval_limit_for(actor)
        if held is None:
            return True
        required = self._access.role_approval_limits.get(approval_level.approver_role)
        return required is not None and held >= required

    def decide(
        self,
        order_id: UUID,
        level: int,
        decision: ApprovalDecision | str,
        actor: ActorRef,
        amount: Decimal | int | str | None = None,
        next_approver_id: UUID | None = None,
        comments: str | None = None,
    ) -> ApprovalRecordModel:
        """
        Record one decision at ``level``.

        Approve within the actor's limit: record ``approved``; at the final
        level the order becomes ``approved``.  Approve beyond the limit, or
        an explicit escalate: record ``escalated`` with the next approver.
        Reject: record ``rejected`` and the order becomes ``rejected``.
        """
        decision = ApprovalDecision(decision)
        order = load_order(self._session, order_id)

        self._gate.enforce(
            check_permission(actor, Action.APPROVE, self._access.role_permissions),
            "PurchaseOrder", order_id,
        )
        if order.status != OrderStatus.PENDING_APPROVAL.value:
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.INVALID_STATUS_TRANSITION,
                    message=f"order {order.order_number} is {order.status!r}, not pending approval",
                    field="status",
                    field_value=order.status,
                ),
                "PurchaseOrder", order_id,
            )

        current = self.current_level(order_id)
        if level != current:
            self._gate.enforce(
                ValidationFailure(
                    kind=(
                        ErrorKind.INVALID_STATUS_TRANSITION if level < current
                        else ErrorKind.APPROVAL_REQUIRED
                    ),
                    message=(
                        f"level {level} has already been decided" if level < current
                        else f"level {current} must be decided before level {level}"
                    ),
                    field="level",
                    field_value=level,
                    context={"current_level": current},
                ),
                "PurchaseOrder", order_id,
            )

        approval_level = self._config.level(level)
        if approval_level is not None and not self._may_decide_at(actor, approval_level):
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.PERMISSION_DENIED,
                    message=(
                        f"role {actor.role!r} may not decide level {level}; "
                        f"it requires {approval_level.approver_role!r}"
                    ),
                    field="level",
                    field_value=level,
                    context={"approver_role": approval_level.approver_role, "actor_role": actor.role},
                ),
                "PurchaseOrder", order_id,
            )

        if amount is None:
            amount = order.total_amount
        self._gate.enforce(check_non_negative(amount, "amount"), "PurchaseOrder", order_id)
        amount = to_decimal(amount)
        if amount != order.total_amount:
            # limits are checked against the order total only
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.PRICE_MISMATCH,
                    message=f"amount {amount} does not match order total {order.total_amount}",
                    field="amount",
                    field_value=amount,
                    context={"order_total": str(order.total_amount)},
                ),
                "PurchaseOrder", order_id,
            )

        final_level = self._config.final_level_for(order.total_amount)
        limit = self._access.approval_limit_for(actor)
        next_level = self._config.level(level + 1)

        escalation_reason: str | None = None
        if decision is ApprovalDecision.REJECT:
            status = ApprovalStatus.REJECTED
        elif decision is ApprovalDecision.ESCALATE:
            status = ApprovalStatus.ESCALATED
            escalation_reason = comments or "escalated by approver"
        elif limit is not None and limit < amount:
            status = ApprovalStatus.ESCALATED
            escalation_reason = f"amount {amount} exceeds approver limit {limit}"
        else:
            status = ApprovalStatus.APPROVED

        if status is ApprovalStatus.ESCALATED and next_level is None:
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.PERMISSION_DENIED,
                    message=f"level {level} is the last approval level; cannot escalate",
                    field="level",
                    field_value=level,
                    context={
                        "amount": str(amount),
                        "approver_limit": None if limit is None else str(limit),
                    },
                ),
                "PurchaseOrder", order_id,
            )

        record = ApprovalRecordModel(
            order_id=order_id,
            level=level,
            status=status.value,
            approver_id=actor.actor_id,
            approver_role=actor.role,
            amount=amount,
            approver_limit=limit,
            next_approver_id=next_approver_id if status is ApprovalStatus.ESCALATED else None,
            next_approver_role=(
                next_level.approver_role
                if status is ApprovalStatus.ESCALATED and next_approver_id is None
                else None
            ),
            escalation_reason=escalation_reason,
            comments=comments,
            chain_snapshot=self._config.chain_snapshot(),
            decided_at=self._clock.now(),
        )
        self._session.add(record)
        self._session.flush()

        self._auditor.append(
            entity_type="ApprovalRecord",
            entity_id=record.id,
            action=_AUDIT_ACTION_BY_STATUS[status],
            actor=actor,
            new_value={
                "order_id": order_id,
                "level": level,
                "approval_status": status.value,
                "amount": amount,
                "approver_limit": limit,
                "final_level": final_level,
                "next_approver_id": record.next_approver_id,
                "next_approver_role": record.next_approver_role,
            },
            reason=escalation_reason or comments,
            metadata={"order_number": order.order_number},
        )

        if status is ApprovalStatus.REJECTED:
            self._state_machine.transition(
                order_id, OrderStatus.REJECTED, actor,
                reason=comments or f"rejected at approval level {level}",
                source=TransitionSource.APPROVAL,
                metadata={"approval_record_id": str(record.id)},
            )
        elif status is ApprovalStatus.APPROVED and level >= final_level:
            self._state_machine.transition(
                order_id, OrderStatus.APPROVED, actor,
                reason=comments or f"approved at level {level}",
                source=TransitionSource.APPROVAL,
                metadata={"approval_record_id": str(record.id)},
            )

        log = logger.warning if status is ApprovalStatus.ESCALATED else logger.info
        log(
            "approval_decision_recorded",
            extra={
                "order_number": order.order_number,
                "level": level,
                "final_level": final_level,
                "approval_status": status.value,
                "amount": amount,
                "approver_limit": limit,
            },
        )
        return record
