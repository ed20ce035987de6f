"""
OrderStateMachine -- sole owner of purchase order status.

Responsibility:
    Validates a requested status change against the workflow table, checks
    the actor's permission for the implied action, writes the new status
    with compare-and-set on (id, version, status), and records one status
    history row plus one audit entry in the caller's transaction.

Architecture position:
    Modules > Purchasing.  Called directly by the facade for manual
    transitions, by the approval engine for ``pending_approval ->
    approved``/``rejected`` and by the receiving reconciler for the
    receiving statuses.  It never touches stock.

Invariants enforced:
    - Only pairs in ORDER_TRANSITIONS are applied.
    - Transitions guarded by APPROVAL_COMPLETE or RECEIPT_RECORDED can only
      be driven by their owning component.
    - A stale version never overwrites a newer status; it raises
      OptimisticLockError.  A conflict on a caller-pinned
      ``expected_version`` is not retryable; an unpinned lost race is, and
      the retried attempt re-validates against the fresh status.

Failure modes:
    - InvalidStatusTransitionError, PermissionDeniedError,
      ApprovalRequiredError from the Validation Gate.
    - OrderNotFoundError for an unknown order.
    - OptimisticLockError on a lost compare-and-set.
"""

from enum import Enum
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_permission,
    check_transition_allowed,
)
from procure_kernel.domain.values import ActorRef, ErrorKind
from procure_kernel.exceptions import OptimisticLockError, OrderNotFoundError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules.purchasing.models import ApprovalStatus, OrderStatus
from procure_modules.purchasing.orm import (
    ApprovalRecordModel,
    PurchaseOrderModel,
    StatusHistoryModel,
)
from procure_modules.purchasing.workflows import (
    APPROVAL_COMPLETE,
    NO_PENDING_APPROVALS,
    ORDER_TRANSITIONS,
    PURCHASE_ORDER_WORKFLOW,
    RECEIPT_RECORDED,
)

logger = get_logger("modules.purchasing.state_machine")


class TransitionSource(str, Enum):
    """Which component is driving a transition."""
    DIRECT = "direct"
    APPROVAL = "approval"
    RECEIVING = "receiving"


_AUDIT_ACTION_BY_TARGET: dict[OrderStatus, AuditAction] = {
    OrderStatus.APPROVED: AuditAction.APPROVED,
    OrderStatus.REJECTED: AuditAction.REJECTED,
    OrderStatus.SENT_TO_SUPPLIER: AuditAction.SENT_TO_SUPPLIER,
    OrderStatus.PARTIALLY_RECEIVED: AuditAction.PARTIALLY_RECEIVED,
    OrderStatus.RECEIVED: AuditAction.RECEIVED,
    OrderStatus.CANCELLED: AuditAction.CANCELLED,
    OrderStatus.CLOSED: AuditAction.CLOSED,
    OrderStatus.REOPENED: AuditAction.REOPENED,
}


def load_order(session: Session, order_id: UUID) -> PurchaseOrderModel:
    """Fresh read of an order and its lines; raises OrderNotFoundError."""
    order = session.execute(
        select(PurchaseOrderModel)
        .where(PurchaseOrderModel.id == order_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(str(order_id))
    return order


def _parse_status(value: OrderStatus | str, current: str) -> OrderStatus | ValidationFailure:
    try:
        return OrderStatus(value)
    except ValueError:
        return ValidationFailure(
            kind=ErrorKind.INVALID_STATUS_TRANSITION,
            message=f"unknown order status {value!r}",
            field="status",
            field_value=str(value),
            context={"current_status": current},
        )


class OrderStateMachine:
    """
    Apply order status transitions.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT retry OptimisticLockError; callers re-read and decide.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        access: AccessPolicy,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._access = access
        self._clock = clock or SystemClock()

    def _has_pending_approvals(self, order_id: UUID) -> bool:
        return self._session.execute(
            select(ApprovalRecordModel.id).where(
                ApprovalRecordModel.order_id == order_id,
                ApprovalRecordModel.status == ApprovalStatus.PENDING.value,
            )
        ).first() is not None

    def _guard_failure(
        self,
        guard_name: str,
        order: PurchaseOrderModel,
        target: OrderStatus,
        source: TransitionSource,
    ) -> ValidationFailure | None:
        context = {"current_status": order.status, "guard": guard_name}
        if guard_name == APPROVAL_COMPLETE.name and source is not TransitionSource.APPROVAL:
            return ValidationFailure(
                kind=ErrorKind.APPROVAL_REQUIRED,
                message=f"order {order.order_number} can only be approved by an approval decision",
                field="status",
                field_value=target.value,
                context=context,
            )
        if guard_name == RECEIPT_RECORDED.name and source is not TransitionSource.RECEIVING:
            return ValidationFailure(
                kind=ErrorKind.INVALID_STATUS_TRANSITION,
                message=f"{target.value!r} is set by receiving goods, not by request",
                field="status",
                field_value=target.value,
                context=context,
            )
        if guard_name == NO_PENDING_APPROVALS.name and self._has_pending_approvals(order.id):
            return ValidationFailure(
                kind=ErrorKind.APPROVAL_REQUIRED,
                message=f"order {order.order_number} has pending approvals",
                field="status",
                field_value=target.value,
                context=context,
            )
        return None

    def transition(
        self,
        order_id: UUID,
        target: OrderStatus | str,
        actor: ActorRef,
        reason: str | None = None,
        expected_version: int | None = None,
        source: TransitionSource = TransitionSource.DIRECT,
        metadata: dict | None = None,
    ) -> PurchaseOrderModel:
        """
        Move an order to ``target``.

        Preconditions:
            - (current, target) is in the workflow table.
            - The actor's role holds the action the transition requires.
            - ``expected_version``, when given, equals the stored version.

        Postconditions:
            - status = target and version = old version + 1.
            - One StatusHistoryModel row and one AuditEvent flushed.

        Raises:
            InvalidStatusTransitionError, PermissionDeniedError,
            ApprovalRequiredError, OrderNotFoundError, OptimisticLockError.
        """
        order = load_order(self._session, order_id)
        current = order.status

        parsed = _parse_status(target, current)
        if isinstance(parsed, ValidationFailure):
            self._gate.enforce(parsed, "PurchaseOrder", order_id)
        target_status = parsed

        self._gate.enforce(
            check_transition_allowed(current, target_status.value, ORDER_TRANSITIONS),
            "PurchaseOrder", order_id,
        )
        rule = PURCHASE_ORDER_WORKFLOW.find(OrderStatus(current), target_status)
        if rule.guard is not None:
            self._gate.enforce(
                self._guard_failure(rule.guard.name, order, target_status, source),
                "PurchaseOrder", order_id,
            )
        self._gate.enforce(
            check_permission(actor, rule.action, self._access.role_permissions),
            "PurchaseOrder", order_id,
        )

        version = order.version
        if expected_version is not None and expected_version != version:
            logger.warning(
                "order_transition_stale_version",
                extra={
                    "order_number": order.order_number,
                    "expected_version": expected_version,
                    "actual_version": version,
                },
            )
            raise OptimisticLockError("PurchaseOrder", str(order_id), retryable=False)

        result = self._session.execute(
            update(PurchaseOrderModel)
            .where(
                PurchaseOrderModel.id == order_id,
                PurchaseOrderModel.version == version,
                PurchaseOrderModel.status == current,
            )
            .values(
                status=target_status.value,
                version=version + 1,
                updated_by_id=actor.actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "order_transition_cas_conflict",
                extra={"order_number": order.order_number, "expected_version": version},
            )
            raise OptimisticLockError("PurchaseOrder", str(order_id), retryable=expected_version is None)

        self._session.add(
            StatusHistoryModel(
                order_id=order_id,
                from_status=current,
                to_status=target_status.value,
                version=version + 1,
                actor_id=actor.actor_id,
                reason=reason,
                occurred_at=self._clock.now(),
                extra_metadata={"source": source.value, **(metadata or {})},
            )
        )
        self._auditor.append(
            entity_type="PurchaseOrder",
            entity_id=order_id,
            action=_AUDIT_ACTION_BY_TARGET.get(target_status, AuditAction.STATUS_CHANGED),
            actor=actor,
            old_value={"status": current, "version": version},
            new_value={"status": target_status.value, "version": version + 1},
            reason=reason,
            metadata={"source": source.value, "order_number": order.order_number, **(metadata or {})},
        )

        order = load_order(self._session, order_id)
        logger.info(
            "order_status_transitioned",
            extra={
                "order_number": order.order_number,
                "from_status": current,
                "to_status": target_status.value,
                "version": order.version,
                "source": source.value,
            },
        )
        return order

    def history(self, order_id: UUID) -> list[StatusHistoryModel]:
        return list(
            self._session.execute(
                select(StatusHistoryModel)
                .where(StatusHistoryModel.order_id == order_id)
                .order_by(StatusHistoryModel.version)
            ).scalars()
        )
