"""
ReceivingReconciler -- turns deliveries into stock and order progress.

Responsibility:
    Evaluates a delivery against the order's open quantities, keeps one
    ReceivingRecord per submission, and (immediately, or on approval)
    applies every accepted item: line ``quantity_received`` via
    compare-and-set, one purchase_receipt stock movement, then the order's
    receiving status via the state machine.

Architecture position:
    Modules > Purchasing.  The only writer of
    ``PurchaseOrderLine.quantity_received``.

Invariants enforced:
    - sum(received) <= sum(ordered) per line unless the order allows
      over-receiving.
    - A receiving number is applied at most once.
    - Rejected items never touch stock; each is persisted as a
      ValidationErrorRecord.
    - Caller holds the product locks for every product on the delivery.
    - Each applied line moves ``Product.unit_cost`` to the weighted average
      of on-hand and received stock.  A delivered cost that differs from
      the ordered cost (within tolerance) leaves one ``price_variance``
      audit entry on the receiving record.

Failure modes:
    - InvalidStatusTransitionError: order not receivable, or record not
      pending.
    - DuplicateItemError: receiving number already used.
    - Any per-item kind when nothing at all is accepted.
    - UnderReceivingError: ``final_receipt`` with a shortfall beyond
      tolerance.
    - OptimisticLockError: a line changed underneath (retryable).
"""

from collections.abc import Sequence
from dataclasses import asdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_permission,
    check_required,
)
from procure_kernel.domain.values import Action, ActorRef, ErrorKind, MovementType
from procure_kernel.exceptions import OptimisticLockError, ReceivingRecordNotFoundError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.models.product import Product
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.sequence_service import SequenceService
from procure_kernel.services.stock_ledger import StockLedgerService
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules.purchasing.config import PurchasingConfig
from procure_modules.purchasing.models import (
    RECEIVABLE_STATUSES,
    DeliveryItem,
    InspectionStatus,
    OrderStatus,
    ReceivingClassification,
    ReceivingStatus,
)
from procure_modules.purchasing.orm import (
    PurchaseOrderLineModel,
    PurchaseOrderModel,
    ReceivingLineModel,
    ReceivingRecordModel,
)
from procure_modules.purchasing.reconciliation import (
    AcceptedItem,
    DeliveryEvaluation,
    LineState,
    PriceVariance,
    check_final_receipt,
    evaluate_delivery,
    weighted_average_cost,
)
from procure_modules.purchasing.state_machine import (
    OrderStateMachine,
    TransitionSource,
    load_order,
)

logger = get_logger("modules.purchasing.receiving")


def _line_states(order: PurchaseOrderModel) -> list[LineState]:
    return [
        LineState(
            line_id=line.id,
            product_id=line.product_id,
            quantity_ordered=line.quantity_ordered,
            quantity_received=line.quantity_received,
            unit_cost=line.unit_cost,
        )
        for line in order.lines
    ]


def load_receiving(session: Session, receiving_id: UUID) -> ReceivingRecordModel:
    record = session.execute(
        select(ReceivingRecordModel)
        .where(ReceivingRecordModel.id == receiving_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if record is None:
        raise ReceivingRecordNotFoundError(str(receiving_id))
    return record


class ReceivingReconciler:
    """
    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT take product locks; the facade does, before any read.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        ledger: StockLedgerService,
        state_machine: OrderStateMachine,
        access: AccessPolicy,
        config: PurchasingConfig,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._ledger = ledger
        self._state_machine = state_machine
        self._access = access
        self._config = config
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _require_receivable(self, order: PurchaseOrderModel) -> None:
        if OrderStatus(order.status) in RECEIVABLE_STATUSES:
            return
        self._gate.enforce(
            ValidationFailure(
                kind=ErrorKind.INVALID_STATUS_TRANSITION,
                message=f"order {order.order_number} is {order.status!r} and cannot receive goods",
                field="status",
                field_value=order.status,
                context={"receivable": sorted(s.value for s in RECEIVABLE_STATUSES)},
            ),
            "PurchaseOrder", order.id,
        )

    def _require_pending(self, record: ReceivingRecordModel) -> None:
        if record.status == ReceivingStatus.PENDING.value:
            return
        self._gate.enforce(
            ValidationFailure(
                kind=ErrorKind.INVALID_STATUS_TRANSITION,
                message=f"receiving {record.receiving_number} is {record.status!r}, not pending",
                field="status",
                field_value=record.status,
            ),
            "ReceivingRecord", record.id,
        )

    def _resolve_receiving_number(self, order_id: UUID, receiving_number: str | None) -> str:
        if receiving_number is None:
            seq = self._sequences.next_value(SequenceService.RECEIVING_RECORD)
            return f"{self._config.receiving_number_prefix}{seq}"
        self._gate.enforce(
            check_required(receiving_number.strip(), "receiving_number"),
            "PurchaseOrder", order_id,
        )
        existing = self._session.execute(
            select(ReceivingRecordModel.id, ReceivingRecordModel.status).where(
                ReceivingRecordModel.receiving_number == receiving_number
            )
        ).first()
        if existing is not None:
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.DUPLICATE_ITEM,
                    message=f"receiving number {receiving_number!r} has already been submitted",
                    field="receiving_number",
                    field_value=receiving_number,
                    context={
                        "receiving_id": str(existing.id),
                        "receiving_status": existing.status,
                    },
                ),
                "PurchaseOrder", order_id,
            )
        return receiving_number

    def _product_activity(self, items: Sequence[DeliveryItem]) -> dict[UUID, bool]:
        ids = [item.product_id for item in items if item.product_id is not None]
        if not ids:
            return {}
        rows = self._session.execute(
            select(Product.id, Product.is_active).where(Product.id.in_(ids))
        ).all()
        return {row.id: row.is_active for row in rows}

    def _raise_nothing_accepted(self, order_id: UUID, evaluation: DeliveryEvaluation) -> None:
        first = evaluation.rejected[0].failure
        self._gate.enforce(
            ValidationFailure(
                kind=first.kind,
                message=f"no delivered item was accepted: {first.message}",
                field=first.field,
                field_value=first.field_value,
                context={
                    "rejected_items": [
                        {
                            "index": r.index,
                            "error_kind": r.failure.kind.value,
                            "message": r.failure.message,
                        }
                        for r in evaluation.rejected
                    ],
                },
            ),
            "PurchaseOrder", order_id,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def reconcile(
        self,
        order_id: UUID,
        items: Sequence[DeliveryItem],
        actor: ActorRef,
        receiving_number: str | None = None,
        final_receipt: bool = False,
        notes: str | None = None,
    ) -> ReceivingRecordModel:
        """
        Evaluate and record one delivery.

        Postconditions (with ``require_receiving_approval`` off):
            - One approved ReceivingRecord with one line per accepted item.
            - Each accepted item has one purchase_receipt movement.
            - Order is ``received`` when every line is complete (or the
              delivery closes it within tolerance), else
              ``partially_received``.
        """
        self._gate.enforce(
            check_permission(actor, Action.RECEIVE, self._access.role_permissions),
            "PurchaseOrder", order_id,
        )
        order = load_order(self._session, order_id)
        self._require_receivable(order)
        self._gate.enforce(check_required(list(items), "items"), "PurchaseOrder", order_id)
        number = self._resolve_receiving_number(order_id, receiving_number)

        lines = _line_states(order)
        evaluation = evaluate_delivery(
            lines,
            items,
            allow_over_receiving=order.allow_over_receiving,
            product_active=self._product_activity(items),
            price_tolerance_percent=self._config.price_tolerance_percent,
        )
        if not evaluation.accepted:
            self._raise_nothing_accepted(order_id, evaluation)
        if final_receipt:
            self._gate.enforce(
                check_final_receipt(
                    lines, evaluation, self._config.under_receiving_tolerance_percent,
                ),
                "PurchaseOrder", order_id,
            )

        record = ReceivingRecordModel(
            order_id=order_id,
            receiving_number=number,
            classification=evaluation.classification.value,
            inspection_status=evaluation.inspection_status.value,
            status=ReceivingStatus.DRAFT.value,
            final_receipt=final_receipt,
            total_items=len(evaluation.accepted),
            total_quantity=evaluation.total_quantity,
            total_value=evaluation.total_value,
            rejected_items=[asdict(r.to_rejected_item()) for r in evaluation.rejected],
            notes=notes,
            created_by_id=actor.actor_id,
        )
        for position, accepted in enumerate(evaluation.accepted):
            record.lines.append(
                ReceivingLineModel(
                    position=position,
                    line_id=accepted.line_id,
                    product_id=accepted.product_id,
                    quantity_delivered=accepted.quantity_delivered,
                    quantity_accepted=accepted.quantity_accepted,
                    quantity_excess=accepted.quantity_excess,
                    unit_cost=accepted.unit_cost,
                    batch_number=accepted.batch_number,
                    expiry_date=accepted.expiry_date,
                )
            )
        self._session.add(record)
        self._session.flush()

        record.status = ReceivingStatus.PENDING.value
        self._session.flush()

        for rejection in evaluation.rejected:
            self._gate.record_failure(rejection.failure, "ReceivingRecord", record.id, actor)

        self._auditor.append(
            entity_type="ReceivingRecord",
            entity_id=record.id,
            action=AuditAction.RECEIVING_RECORDED,
            actor=actor,
            new_value={
                "receiving_status": record.status,
                "receiving_number": number,
                "order_id": order_id,
                "classification": record.classification,
                "inspection_status": record.inspection_status,
                "total_quantity": record.total_quantity,
                "rejected_count": len(evaluation.rejected),
                "final_receipt": final_receipt,
            },
            metadata={"order_number": order.order_number},
        )

        log = logger.warning if evaluation.rejected else logger.info
        log(
            "receiving_recorded",
            extra={
                "order_number": order.order_number,
                "receiving_number": number,
                "classification": record.classification,
                "accepted_count": len(evaluation.accepted),
                "rejected_count": len(evaluation.rejected),
            },
        )

        if not self._config.require_receiving_approval:
            self._apply(record, actor)
        return record

    def approve(self, receiving_id: UUID, actor: ActorRef) -> ReceivingRecordModel:
        """
        Apply a pending record.  Accepted quantities are clamped again
        against what is open on the order now.
        """
        record = load_receiving(self._session, receiving_id)
        self._gate.enforce(
            check_permission(actor, Action.RECEIVE, self._access.role_permissions),
            "ReceivingRecord", receiving_id,
        )
        self._require_pending(record)
        order = load_order(self._session, record.order_id)
        self._require_receivable(order)

        if not order.allow_over_receiving:
            remaining = {line.id: line.quantity_ordered - line.quantity_received for line in order.lines}
            for rline in record.lines:
                clamped = max(min(rline.quantity_accepted, remaining.get(rline.line_id, Decimal("0"))), Decimal("0"))
                if clamped != rline.quantity_accepted:
                    logger.warning(
                        "receiving_line_reclamped",
                        extra={
                            "receiving_number": record.receiving_number,
                            "product": str(rline.product_id),
                            "previous_quantity": rline.quantity_accepted,
                            "clamped_quantity": clamped,
                        },
                    )
                    rline.quantity_accepted = clamped
            if all(rline.quantity_accepted == 0 for rline in record.lines):
                self._gate.enforce(
                    ValidationFailure(
                        kind=ErrorKind.OVER_RECEIVING,
                        message=(
                            f"receiving {record.receiving_number} has nothing left to apply; "
                            "its lines were received in the meantime"
                        ),
                        field="quantity",
                        context={"receiving_number": record.receiving_number},
                    ),
                    "ReceivingRecord", receiving_id,
                )
            self._session.flush()

        if record.final_receipt:
            self._gate.enforce(
                check_final_receipt(
                    _line_states(order),
                    _evaluation_from_record(record),
                    self._config.under_receiving_tolerance_percent,
                ),
                "ReceivingRecord", receiving_id,
            )
        self._apply(record, actor)
        return record

    def cancel(self, receiving_id: UUID, actor: ActorRef, reason: str | None = None) -> ReceivingRecordModel:
        record = load_receiving(self._session, receiving_id)
        self._gate.enforce(
            check_permission(actor, Action.RECEIVE, self._access.role_permissions),
            "ReceivingRecord", receiving_id,
        )
        self._require_pending(record)
        record.status = ReceivingStatus.CANCELLED.value
        record.updated_by_id = actor.actor_id
        self._session.flush()
        self._auditor.append(
            entity_type="ReceivingRecord",
            entity_id=record.id,
            action=AuditAction.RECEIVING_CANCELLED,
            actor=actor,
            old_value={"receiving_status": ReceivingStatus.PENDING.value},
            new_value={"receiving_status": ReceivingStatus.CANCELLED.value},
            reason=reason,
        )
        logger.info(
            "receiving_cancelled",
            extra={"receiving_number": record.receiving_number, "reason": reason},
        )
        return record

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def _apply(self, record: ReceivingRecordModel, actor: ActorRef) -> None:
        order = load_order(self._session, record.order_id)
        lines_by_id = {line.id: line for line in order.lines}
        variances: list[PriceVariance] = []

        for rline in record.lines:
            if rline.quantity_accepted <= 0:
                continue
            line = lines_by_id[rline.line_id]
            before = line.quantity_received
            result = self._session.execute(
                update(PurchaseOrderLineModel)
                .where(
                    PurchaseOrderLineModel.id == line.id,
                    PurchaseOrderLineModel.quantity_received == before,
                )
                .values(
                    quantity_received=before + rline.quantity_accepted,
                    updated_by_id=actor.actor_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(
                    "receiving_line_cas_conflict",
                    extra={"receiving_number": record.receiving_number, "line_number": line.line_number},
                )
                raise OptimisticLockError("PurchaseOrderLine", str(line.id))

            movement = self._ledger.record(
                rline.product_id,
                rline.quantity_accepted,
                MovementType.PURCHASE_RECEIPT,
                record.id,
                actor,
                reference_type="ReceivingRecord",
                unit_cost=rline.unit_cost,
                batch_number=rline.batch_number,
                expiry_date=rline.expiry_date,
                notes=f"{record.receiving_number} for {order.order_number}",
            )
            rline.movement_id = movement.id

            if rline.unit_cost is not None:
                self._move_unit_cost(
                    rline.product_id, movement.quantity_before, rline.quantity_accepted,
                    rline.unit_cost, record, actor,
                )
                if rline.unit_cost != line.unit_cost:
                    variances.append(PriceVariance(
                        line_id=line.id,
                        product_id=rline.product_id,
                        quantity=rline.quantity_accepted,
                        ordered_unit_cost=line.unit_cost,
                        delivered_unit_cost=rline.unit_cost,
                    ))

        for variance in variances:
            self._auditor.append(
                entity_type="ReceivingRecord",
                entity_id=record.id,
                action=AuditAction.PRICE_VARIANCE,
                actor=actor,
                new_value=variance.to_dict(),
            )
            logger.info(
                "price_variance_recorded",
                extra={
                    "receiving_number": record.receiving_number,
                    "product": str(variance.product_id),
                    "variance_percent": variance.variance_percent,
                    "total_variance": variance.total_variance,
                },
            )

        record.status = ReceivingStatus.APPROVED.value
        record.approved_by_id = actor.actor_id
        record.approved_at = self._clock.now()
        record.total_items = sum(1 for rline in record.lines if rline.quantity_accepted > 0)
        record.total_quantity = sum((rline.quantity_accepted for rline in record.lines), Decimal("0"))
        record.total_value = sum(
            (rline.quantity_accepted * (rline.unit_cost or Decimal("0")) for rline in record.lines),
            Decimal("0"),
        )
        record.updated_by_id = actor.actor_id
        self._session.flush()

        self._auditor.append(
            entity_type="ReceivingRecord",
            entity_id=record.id,
            action=AuditAction.RECEIVING_APPROVED,
            actor=actor,
            old_value={"receiving_status": ReceivingStatus.PENDING.value},
            new_value={
                "receiving_status": ReceivingStatus.APPROVED.value,
                "total_quantity": record.total_quantity,
                "movements": [rline.movement_id for rline in record.lines if rline.movement_id],
                "price_variance_count": len(variances),
            },
        )

        order = load_order(self._session, record.order_id)
        complete = all(line.quantity_received >= line.quantity_ordered for line in order.lines)
        target = (
            OrderStatus.RECEIVED if complete or record.final_receipt
            else OrderStatus.PARTIALLY_RECEIVED
        )
        if order.status != target.value:
            self._state_machine.transition(
                order.id, target, actor,
                reason=f"receiving {record.receiving_number}",
                source=TransitionSource.RECEIVING,
                metadata={"receiving_id": str(record.id)},
            )
        logger.info(
            "receiving_applied",
            extra={
                "order_number": order.order_number,
                "receiving_number": record.receiving_number,
                "total_quantity": record.total_quantity,
                "order_status": target.value,
            },
        )


    def _move_unit_cost(
        self,
        product_id: UUID,
        on_hand: Decimal,
        quantity: Decimal,
        unit_cost: Decimal,
        record: ReceivingRecordModel,
        actor: ActorRef,
    ) -> None:
        product = self._session.get(Product, product_id)
        old_cost = product.unit_cost
        new_cost = weighted_average_cost(on_hand, old_cost, quantity, unit_cost)
        if new_cost == old_cost:
            return
        product.unit_cost = new_cost
        product.updated_by_id = actor.actor_id
        self._session.flush()
        self._auditor.append(
            entity_type="Product",
            entity_id=product_id,
            action=AuditAction.UNIT_COST_UPDATED,
            actor=actor,
            old_value={"unit_cost": old_cost, "stock_quantity": on_hand},
            new_value={
                "unit_cost": new_cost,
                "received_quantity": quantity,
                "received_unit_cost": unit_cost,
                "receiving_number": record.receiving_number,
            },
        )


def _evaluation_from_record(record: ReceivingRecordModel) -> DeliveryEvaluation:
    return DeliveryEvaluation(
        accepted=tuple(
            AcceptedItem(
                index=rline.position,
                line_id=rline.line_id,
                product_id=rline.product_id,
                quantity_delivered=rline.quantity_delivered,
                quantity_accepted=rline.quantity_accepted,
                quantity_excess=rline.quantity_excess,
                unit_cost=rline.unit_cost or Decimal("0"),
            )
            for rline in record.lines
        ),
        rejected=(),
        classification=ReceivingClassification(record.classification),
        inspection_status=InspectionStatus(record.inspection_status),
    )
