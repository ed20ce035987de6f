"""
Purchasing Domain Models.

The nouns of purchasing: purchase orders and their lines, deliveries,
receiving records and approval records.  Frozen DTOs returned by the
PurchasingService facade; the ORM lives in ``orm.py``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from procure_kernel.logging_config import get_logger

logger = get_logger("modules.purchasing.models")


class OrderStatus(str, Enum):
    """Purchase order lifecycle states."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PARTIALLY_RECEIVED = "partially_received"
    RECEIVED = "received"
    CLOSED = "closed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REOPENED = "reopened"


RECEIVABLE_STATUSES = frozenset({OrderStatus.SENT_TO_SUPPLIER, OrderStatus.PARTIALLY_RECEIVED})


class ReceivingClassification(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    OVER = "over"


class ReceivingStatus(str, Enum):
    """Receiving record lifecycle: draft -> pending -> approved | cancelled."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"


class InspectionStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"


# Inputs


@dataclass(frozen=True)
class LineItemInput:
    """One requested line on a new or edited order."""
    product_id: UUID | None
    quantity: Decimal | int | str | None
    unit_cost: Decimal | int | str | None = None


@dataclass(frozen=True)
class DeliveryItem:
    """One delivered product in a receiving submission."""
    product_id: UUID | None
    quantity: Decimal | int | str | None
    unit_cost: Decimal | None = None
    batch_number: str | None = None
    expiry_date: date | None = None


# Outputs


@dataclass(frozen=True)
class PurchaseOrderLine:
    """A line item on a purchase order."""
    id: UUID
    line_number: int
    product_id: UUID
    quantity_ordered: Decimal
    quantity_received: Decimal
    unit_cost: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(self.quantity_ordered - self.quantity_received, Decimal("0"))

    @property
    def line_total(self) -> Decimal:
        return self.quantity_ordered * self.unit_cost


@dataclass(frozen=True)
class PurchaseOrder:
    """A purchase order as seen by callers."""
    id: UUID
    order_number: str
    supplier_id: UUID
    status: OrderStatus
    total_amount: Decimal
    currency: str
    allow_over_receiving: bool
    version: int
    lines: tuple[PurchaseOrderLine, ...] = field(default_factory=tuple)
    notes: str | None = None
    created_at: datetime | None = None

    @property
    def quantity_ordered(self) -> Decimal:
        return sum((line.quantity_ordered for line in self.lines), Decimal("0"))

    @property
    def quantity_received(self) -> Decimal:
        return sum((line.quantity_received for line in self.lines), Decimal("0"))

    def line_for(self, product_id: UUID) -> PurchaseOrderLine | None:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None


@dataclass(frozen=True)
class StatusHistoryEntry:
    order_id: UUID
    from_status: OrderStatus | None
    to_status: OrderStatus
    actor_id: UUID
    occurred_at: datetime
    reason: str | None = None


@dataclass(frozen=True)
class ReceivedLine:
    """What happened to one delivered product."""
    product_id: UUID
    line_id: UUID
    quantity_delivered: Decimal
    quantity_accepted: Decimal
    quantity_excess: Decimal
    unit_cost: Decimal | None = None
    batch_number: str | None = None
    expiry_date: date | None = None
    movement_id: UUID | None = None


@dataclass(frozen=True)
class RejectedItem:
    """A delivered item (or the excess part of one) that was not accepted."""
    index: int
    product_id: str | None
    quantity: str | None
    error_kind: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReceivingRecord:
    id: UUID
    order_id: UUID
    receiving_number: str
    classification: ReceivingClassification
    inspection_status: InspectionStatus
    status: ReceivingStatus
    final_receipt: bool
    total_items: int
    total_quantity: Decimal
    total_value: Decimal
    lines: tuple[ReceivedLine, ...] = field(default_factory=tuple)
    rejected_items: tuple[RejectedItem, ...] = field(default_factory=tuple)
    approved_by_id: UUID | None = None
    approved_at: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ApprovalRecord:
    id: UUID
    order_id: UUID
    level: int
    status: ApprovalStatus
    approver_id: UUID
    approver_role: str
    amount: Decimal
    approver_limit: Decimal | None
    decided_at: datetime
    next_approver_id: UUID | None = None
    next_approver_role: str | None = None
    escalation_reason: str | None = None
    comments: str | None = None
    chain: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.level < 1:
            raise ValueError(f"approval level must be >= 1, got {self.level}")
