"""
Delivery evaluation -- pure receiving arithmetic.

Clamps delivered quantities against each order line's remaining quantity,
splits them into accepted items and per-item rejections, and classifies the
delivery as ``full``, ``partial`` or ``over``.  No I/O: the reconciler
loads the inputs and persists the outcome.  The cost arithmetic applied
when a receipt is booked (moving-average unit cost, price variance) lives
here too.

Per-item checks run in a fixed order and the first failure wins:

    missing product id -> missing_required_field
    quantity <= 0      -> invalid_quantity
    repeated product   -> duplicate_item
    not on the order   -> over_receiving
    product inactive   -> product_inactive
    unit cost off      -> price_mismatch
    line complete      -> over_receiving (unless the order allows excess)
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from procure_kernel.domain.validation import (
    ValidationFailure,
    check_positive_quantity,
    check_price_within_tolerance,
    check_product_active,
    check_required,
    first_failure,
    to_decimal,
)
from procure_kernel.domain.values import ErrorKind
from procure_modules.purchasing.models import (
    DeliveryItem,
    InspectionStatus,
    ReceivingClassification,
    RejectedItem,
)

_ZERO = Decimal("0")
_COST_PLACES = Decimal("0.000000001")


@dataclass(frozen=True)
class LineState:
    """An order line as the evaluator needs it."""
    line_id: UUID
    product_id: UUID
    quantity_ordered: Decimal
    quantity_received: Decimal
    unit_cost: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(self.quantity_ordered - self.quantity_received, _ZERO)


@dataclass(frozen=True)
class AcceptedItem:
    index: int
    line_id: UUID
    product_id: UUID
    quantity_delivered: Decimal
    quantity_accepted: Decimal
    quantity_excess: Decimal
    unit_cost: Decimal
    batch_number: str | None = None
    expiry_date: date | None = None


@dataclass(frozen=True)
class ItemRejection:
    index: int
    item: DeliveryItem
    failure: ValidationFailure

    def to_rejected_item(self) -> RejectedItem:
        return RejectedItem(
            index=self.index,
            product_id=None if self.item.product_id is None else str(self.item.product_id),
            quantity=None if self.item.quantity is None else str(self.item.quantity),
            error_kind=self.failure.kind.value,
            message=self.failure.message,
            context={k: str(v) for k, v in self.failure.context.items()},
        )


@dataclass(frozen=True)
class DeliveryEvaluation:
    accepted: tuple[AcceptedItem, ...]
    rejected: tuple[ItemRejection, ...]
    classification: ReceivingClassification
    inspection_status: InspectionStatus
    open_lines: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def total_quantity(self) -> Decimal:
        return sum((a.quantity_accepted for a in self.accepted), _ZERO)

    @property
    def total_value(self) -> Decimal:
        return sum((a.quantity_accepted * a.unit_cost for a in self.accepted), _ZERO)


def _over_receiving(item: DeliveryItem, message: str, **context) -> ValidationFailure:
    return ValidationFailure(
        kind=ErrorKind.OVER_RECEIVING,
        message=message,
        field="quantity",
        field_value=None if item.quantity is None else str(item.quantity),
        context={"product_id": str(item.product_id), **context},
    )


def evaluate_delivery(
    lines: Sequence[LineState],
    items: Sequence[DeliveryItem],
    allow_over_receiving: bool,
    product_active: Mapping[UUID, bool],
    price_tolerance_percent: Decimal,
) -> DeliveryEvaluation:
    """Split ``items`` into accepted quantities and rejections."""
    by_product = {line.product_id: line for line in lines}
    seen: set[UUID] = set()
    accepted: list[AcceptedItem] = []
    rejected: list[ItemRejection] = []

    for index, item in enumerate(items):
        failure = first_failure(
            check_required(item.product_id, f"items[{index}].product_id"),
            check_positive_quantity(item.quantity, f"items[{index}].quantity"),
        )
        if failure is None and item.product_id in seen:
            failure = ValidationFailure(
                kind=ErrorKind.DUPLICATE_ITEM,
                message=f"product {item.product_id} appears more than once in this delivery",
                field="product_id",
                field_value=str(item.product_id),
            )
        if failure is not None:
            rejected.append(ItemRejection(index, item, failure))
            continue
        seen.add(item.product_id)

        line = by_product.get(item.product_id)
        if line is None:
            rejected.append(ItemRejection(
                index, item,
                _over_receiving(item, f"product {item.product_id} is not on this order"),
            ))
            continue

        failure = check_product_active(item.product_id, product_active.get(item.product_id))
        if failure is None and item.unit_cost is not None:
            failure = check_price_within_tolerance(
                line.unit_cost, to_decimal(item.unit_cost), price_tolerance_percent,
            )
        if failure is not None:
            rejected.append(ItemRejection(index, item, failure))
            continue

        delivered = to_decimal(item.quantity)
        remaining = line.remaining
        excess = max(delivered - remaining, _ZERO)
        if excess and not allow_over_receiving:
            if remaining == 0:
                rejected.append(ItemRejection(
                    index, item,
                    _over_receiving(
                        item,
                        f"line for product {item.product_id} is already fully received",
                        remaining="0",
                    ),
                ))
                continue
            rejected.append(ItemRejection(
                index, item,
                _over_receiving(
                    item,
                    f"{excess} delivered beyond the {remaining} remaining",
                    remaining=str(remaining),
                    excess=str(excess),
                ),
            ))
            quantity_accepted, quantity_excess = remaining, _ZERO
        else:
            quantity_accepted, quantity_excess = delivered, excess

        accepted.append(AcceptedItem(
            index=index,
            line_id=line.line_id,
            product_id=line.product_id,
            quantity_delivered=delivered,
            quantity_accepted=quantity_accepted,
            quantity_excess=quantity_excess,
            unit_cost=line.unit_cost if item.unit_cost is None else to_decimal(item.unit_cost),
            batch_number=item.batch_number,
            expiry_date=item.expiry_date,
        ))

    accepted_by_line = {a.line_id: a.quantity_accepted for a in accepted}
    open_lines = tuple(
        line.line_id for line in lines
        if line.quantity_received + accepted_by_line.get(line.line_id, _ZERO) < line.quantity_ordered
    )
    if any(a.quantity_excess > 0 for a in accepted):
        classification = ReceivingClassification.OVER
    elif open_lines:
        classification = ReceivingClassification.PARTIAL
    else:
        classification = ReceivingClassification.FULL

    if not rejected:
        inspection = InspectionStatus.PASSED
    elif not accepted:
        inspection = InspectionStatus.FAILED
    else:
        inspection = InspectionStatus.PARTIAL

    return DeliveryEvaluation(
        accepted=tuple(accepted),
        rejected=tuple(rejected),
        classification=classification,
        inspection_status=inspection,
        open_lines=open_lines,
    )


def check_final_receipt(
    lines: Sequence[LineState],
    evaluation: DeliveryEvaluation,
    tolerance_percent: Decimal,
) -> ValidationFailure | None:
    """
    A closing delivery may leave each line short by at most
    ``tolerance_percent`` of its ordered quantity.
    """
    accepted_by_line = {a.line_id: a.quantity_accepted for a in evaluation.accepted}
    short = {}
    for line in lines:
        received = line.quantity_received + accepted_by_line.get(line.line_id, _ZERO)
        shortfall = line.quantity_ordered - received
        if shortfall <= 0 or line.quantity_ordered == 0:
            continue
        if shortfall / line.quantity_ordered * 100 > tolerance_percent:
            short[str(line.product_id)] = str(shortfall)
    if not short:
        return None
    return ValidationFailure(
        kind=ErrorKind.UNDER_RECEIVING,
        message=(
            f"final receipt leaves {len(short)} line(s) short by more than "
            f"{tolerance_percent}%"
        ),
        field="final_receipt",
        field_value="true",
        context={"shortfalls": short, "tolerance_percent": str(tolerance_percent)},
    )


def weighted_average_cost(
    on_hand: Decimal,
    current_cost: Decimal,
    incoming_quantity: Decimal,
    incoming_cost: Decimal,
) -> Decimal:
    """
    Moving-average unit cost after receiving ``incoming_quantity``.

    With nothing on hand (or a negative balance) the incoming cost replaces
    the current one outright.
    """
    if incoming_quantity <= 0:
        return current_cost
    if on_hand <= 0:
        return incoming_cost
    total = on_hand * current_cost + incoming_quantity * incoming_cost
    return (total / (on_hand + incoming_quantity)).quantize(_COST_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceVariance:
    """Delivered against ordered unit cost for one accepted line.  Positive is unfavorable."""
    line_id: UUID
    product_id: UUID
    quantity: Decimal
    ordered_unit_cost: Decimal
    delivered_unit_cost: Decimal

    @property
    def variance(self) -> Decimal:
        return self.delivered_unit_cost - self.ordered_unit_cost

    @property
    def variance_percent(self) -> Decimal:
        if self.ordered_unit_cost == 0:
            return _ZERO if self.variance == 0 else Decimal("100")
        return (self.variance / self.ordered_unit_cost * 100).quantize(Decimal("0.01"))

    @property
    def total_variance(self) -> Decimal:
        return self.variance * self.quantity

    @property
    def favorable(self) -> bool:
        return self.variance < 0

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "ordered_unit_cost": self.ordered_unit_cost,
            "delivered_unit_cost": self.delivered_unit_cost,
            "variance": self.variance,
            "variance_percent": self.variance_percent,
            "total_variance": self.total_variance,
            "favorable": self.favorable,
        }
