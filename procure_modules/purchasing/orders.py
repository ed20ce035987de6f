"""
PurchaseOrderManager -- order creation and line editing.

Responsibility:
    Creates purchase orders in ``draft`` (validated, numbered, audited) and
    edits their lines while they are still drafts.  Status changes after
    creation belong to the state machine.

Architecture position:
    Modules > Purchasing.  Called by the PurchasingService facade.

Invariants enforced:
    - total_amount = sum(quantity_ordered * unit_cost) after every write.
    - One line per product; quantities > 0; unit costs >= 0.
    - Supplier and every product are active at creation and edit time.
    - A line edit claims the order with a compare-and-set on
      (version, status = draft) and bumps the version.
    - Order numbers come from a locked sequence row (``PO-1001`` first with
      the default configuration) and never change afterwards.
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_no_duplicate_products,
    check_non_negative,
    check_permission,
    check_positive_quantity,
    check_product_active,
    check_required,
    check_supplier_active,
    first_failure,
    to_decimal,
)
from procure_kernel.domain.values import Action, ActorRef, ErrorKind
from procure_kernel.exceptions import OptimisticLockError
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.models.product import Product, Supplier
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.sequence_service import SequenceService
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules.purchasing.config import PurchasingConfig
from procure_modules.purchasing.models import LineItemInput, OrderStatus
from procure_modules.purchasing.orm import (
    PurchaseOrderLineModel,
    PurchaseOrderModel,
    StatusHistoryModel,
)
from procure_modules.purchasing.state_machine import load_order

logger = get_logger("modules.purchasing.orders")


def _lines_snapshot(lines: Sequence[PurchaseOrderLineModel]) -> list[dict[str, Any]]:
    return [
        {
            "line_number": line.line_number,
            "product_id": line.product_id,
            "quantity_ordered": line.quantity_ordered,
            "unit_cost": line.unit_cost,
        }
        for line in lines
    ]


class PurchaseOrderManager:
    """
    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        access: AccessPolicy,
        config: PurchasingConfig,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._access = access
        self._config = config
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    def _validate_lines(
        self,
        line_items: Sequence[LineItemInput],
        entity_id: UUID | None,
    ) -> list[tuple[UUID, Decimal, Decimal]]:
        """Return (product_id, quantity, unit_cost) per line or raise the first failure."""
        self._gate.enforce(check_required(list(line_items), "line_items"), "PurchaseOrder", entity_id)

        for index, item in enumerate(line_items):
            self._gate.enforce(
                first_failure(
                    check_required(item.product_id, f"line_items[{index}].product_id"),
                    check_positive_quantity(item.quantity, f"line_items[{index}].quantity"),
                    None if item.unit_cost is None
                    else check_non_negative(item.unit_cost, f"line_items[{index}].unit_cost"),
                ),
                "PurchaseOrder", entity_id,
            )
        self._gate.enforce(
            check_no_duplicate_products(item.product_id for item in line_items),
            "PurchaseOrder", entity_id,
        )

        product_ids = [item.product_id for item in line_items]
        products = {
            p.id: p
            for p in self._session.execute(
                select(Product).where(Product.id.in_(product_ids))
            ).scalars()
        }
        resolved = []
        for item in line_items:
            product = products.get(item.product_id)
            self._gate.enforce(
                check_product_active(item.product_id, None if product is None else product.is_active),
                "PurchaseOrder", entity_id,
            )
            cost = product.unit_cost if item.unit_cost is None else to_decimal(item.unit_cost)
            resolved.append((item.product_id, to_decimal(item.quantity), cost))
        return resolved

    def _next_order_number(self) -> str:
        seq = self._sequences.next_value(SequenceService.PURCHASE_ORDER)
        return f"{self._config.order_number_prefix}{self._config.order_number_start + seq}"

    def create(
        self,
        supplier_id: UUID,
        line_items: Sequence[LineItemInput],
        actor: ActorRef,
        order_number: str | None = None,
        currency: str | None = None,
        allow_over_receiving: bool | None = None,
        notes: str | None = None,
    ) -> PurchaseOrderModel:
        """
        Create an order in ``draft``.

        Raises:
            PermissionDeniedError, MissingRequiredFieldError,
            SupplierInactiveError, ProductInactiveError, InvalidQuantityError,
            DuplicateItemError.
        """
        self._gate.enforce(
            check_permission(actor, Action.CREATE, self._access.role_permissions),
            "PurchaseOrder",
        )
        self._gate.enforce(check_required(supplier_id, "supplier_id"), "PurchaseOrder")
        supplier = self._session.get(Supplier, supplier_id)
        self._gate.enforce(
            check_supplier_active(supplier_id, None if supplier is None else supplier.is_active),
            "PurchaseOrder",
        )
        resolved = self._validate_lines(line_items, None)

        if order_number is not None:
            self._gate.enforce(check_required(order_number.strip(), "order_number"), "PurchaseOrder")
            taken = self._session.execute(
                select(PurchaseOrderModel.id).where(PurchaseOrderModel.order_number == order_number)
            ).first()
            if taken is not None:
                self._gate.enforce(
                    ValidationFailure(
                        kind=ErrorKind.DUPLICATE_ITEM,
                        message=f"order number {order_number!r} is already in use",
                        field="order_number",
                        field_value=order_number,
                    ),
                    "PurchaseOrder",
                )
        else:
            order_number = self._next_order_number()

        total = sum((qty * cost for _, qty, cost in resolved), Decimal("0"))
        order = PurchaseOrderModel(
            order_number=order_number,
            supplier_id=supplier_id,
            status=OrderStatus.DRAFT.value,
            total_amount=total,
            currency=currency or self._config.default_currency,
            allow_over_receiving=(
                self._config.allow_over_receiving_default
                if allow_over_receiving is None else allow_over_receiving
            ),
            version=0,
            notes=notes,
            created_by_id=actor.actor_id,
        )
        for number, (product_id, qty, cost) in enumerate(resolved, start=1):
            order.lines.append(
                PurchaseOrderLineModel(
                    line_number=number,
                    product_id=product_id,
                    quantity_ordered=qty,
                    quantity_received=Decimal("0"),
                    unit_cost=cost,
                    created_by_id=actor.actor_id,
                )
            )
        self._session.add(order)
        self._session.flush()

        self._session.add(
            StatusHistoryModel(
                order_id=order.id,
                from_status=None,
                to_status=OrderStatus.DRAFT.value,
                version=0,
                actor_id=actor.actor_id,
                reason="created",
                occurred_at=self._clock.now(),
            )
        )
        self._auditor.append(
            entity_type="PurchaseOrder",
            entity_id=order.id,
            action=AuditAction.CREATED,
            actor=actor,
            new_value={
                "status": OrderStatus.DRAFT.value,
                "version": 0,
                "order_number": order_number,
                "supplier_id": supplier_id,
                "total_amount": total,
                "currency": order.currency,
                "allow_over_receiving": order.allow_over_receiving,
                "lines": _lines_snapshot(order.lines),
            },
        )
        logger.info(
            "purchase_order_created",
            extra={
                "order_number": order_number,
                "supplier_id": str(supplier_id),
                "line_count": len(resolved),
                "total_amount": total,
            },
        )
        return order

    def update_line_items(
        self,
        order_id: UUID,
        line_items: Sequence[LineItemInput],
        actor: ActorRef,
        reason: str | None = None,
    ) -> PurchaseOrderModel:
        """
        Replace a draft order's lines.

        Lines are matched by product: matching lines are edited in place,
        missing ones removed, new ones appended with the next line numbers.

        Raises:
            InvalidStatusTransitionError: the order is not a draft.
            InvalidQuantityError: a line already has goods received.
            OptimisticLockError: the order got a new version or left draft
                between the read and the write.
        """
        self._gate.enforce(
            check_permission(actor, Action.EDIT, self._access.role_permissions),
            "PurchaseOrder", order_id,
        )
        order = load_order(self._session, order_id)
        if order.status != OrderStatus.DRAFT.value:
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.INVALID_STATUS_TRANSITION,
                    message=f"line items can only be edited in draft, order is {order.status!r}",
                    field="status",
                    field_value=order.status,
                ),
                "PurchaseOrder", order_id,
            )
        received = [line for line in order.lines if line.quantity_received > 0]
        if received:
            self._gate.enforce(
                ValidationFailure(
                    kind=ErrorKind.INVALID_QUANTITY,
                    message="lines with received goods cannot be edited",
                    field="line_items",
                    context={"received_lines": [line.line_number for line in received]},
                ),
                "PurchaseOrder", order_id,
            )

        resolved = self._validate_lines(line_items, order_id)
        old_lines = _lines_snapshot(order.lines)
        old_total = order.total_amount

        by_product = {line.product_id: line for line in order.lines}
        wanted = {product_id for product_id, _, _ in resolved}
        # removed numbers are not reused; deletes flush after inserts
        next_number = max((line.line_number for line in order.lines), default=0) + 1
        for line in list(order.lines):
            if line.product_id not in wanted:
                order.lines.remove(line)
        for product_id, qty, cost in resolved:
            line = by_product.get(product_id)
            if line is not None:
                line.quantity_ordered = qty
                line.unit_cost = cost
                line.updated_by_id = actor.actor_id
            else:
                order.lines.append(
                    PurchaseOrderLineModel(
                        line_number=next_number,
                        product_id=product_id,
                        quantity_ordered=qty,
                        quantity_received=Decimal("0"),
                        unit_cost=cost,
                        created_by_id=actor.actor_id,
                    )
                )
                next_number += 1

        version = order.version
        result = self._session.execute(
            update(PurchaseOrderModel)
            .where(
                PurchaseOrderModel.id == order_id,
                PurchaseOrderModel.version == version,
                PurchaseOrderModel.status == OrderStatus.DRAFT.value,
            )
            .values(
                total_amount=sum((qty * cost for _, qty, cost in resolved), Decimal("0")),
                version=version + 1,
                updated_by_id=actor.actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "order_lines_cas_conflict",
                extra={"order_number": order.order_number, "expected_version": version},
            )
            raise OptimisticLockError("PurchaseOrder", str(order_id))
        self._session.flush()
        order = load_order(self._session, order_id)

        self._auditor.append(
            entity_type="PurchaseOrder",
            entity_id=order.id,
            action=AuditAction.EDITED_ITEMS,
            actor=actor,
            old_value={"total_amount": old_total, "lines": old_lines},
            new_value={"total_amount": order.total_amount, "lines": _lines_snapshot(order.lines)},
            reason=reason,
        )
        logger.info(
            "purchase_order_lines_updated",
            extra={
                "order_number": order.order_number,
                "line_count": len(order.lines),
                "total_amount": order.total_amount,
            },
        )
        return order

    def replay_status(self, order_id: UUID) -> OrderStatus | None:
        """Status reconstructed purely from the order's audit entries."""
        value = self._auditor.replay("PurchaseOrder", order_id, "status")
        return OrderStatus(value) if value is not None else None
