"""
SQLAlchemy ORM persistence models for the Purchasing module.

Responsibility
--------------
Database-backed persistence for purchase orders, their lines, the status
history, receiving records with their lines, and approval records.

Architecture position
---------------------
**Modules layer** -- ORM models consumed by the purchasing services.
Inherits from ``TrackedBase`` / ``Base`` (kernel db layer).  Protection
rules are registered with ``procure_kernel.db.immutability`` at import.

Invariants enforced
-------------------
* All quantities and amounts use ``Decimal`` (Numeric(38,9)).
* Enum fields stored as String(30).
* ``PurchaseOrderModel.status``, ``order_number`` and ``version`` are
  guarded: only the state machine's compare-and-set UPDATE moves them.
* ``PurchaseOrderLineModel.quantity_received`` is guarded: only the
  receiving reconciler's compare-and-set UPDATE moves it.
* Status history and approval records are append-only.
* Receiving records are frozen once approved or cancelled; receiving lines
  are frozen once their stock movement exists.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procure_kernel.db.base import Base, TrackedBase, UUIDString
from procure_kernel.db.immutability import ImmutabilityRule, add_rule

# ---------------------------------------------------------------------------
# PurchaseOrderModel
# ---------------------------------------------------------------------------


class PurchaseOrderModel(TrackedBase):
    """
    A purchase order placed with a supplier.

    Maps to the ``PurchaseOrder`` DTO in ``procure_modules.purchasing.models``.

    Guarantees:
        - ``order_number`` is unique and never changes.
        - ``total_amount`` = sum(quantity_ordered * unit_cost) over lines.
        - ``version`` increases by one on every status transition and
          every line edit.
    """

    __tablename__ = "purchase_orders"

    __table_args__ = (
        Index("idx_po_supplier", "supplier_id"),
        Index("idx_po_status", "status"),
    )

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    supplier_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("suppliers.id"), nullable=False,
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="PHP")
    allow_over_receiving: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list["PurchaseOrderLineModel"]] = relationship(
        "PurchaseOrderLineModel",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PurchaseOrderLineModel.line_number",
    )

    def to_dto(self):
        from procure_modules.purchasing.models import OrderStatus, PurchaseOrder

        return PurchaseOrder(
            id=self.id,
            order_number=self.order_number,
            supplier_id=self.supplier_id,
            status=OrderStatus(self.status),
            total_amount=self.total_amount,
            currency=self.currency,
            allow_over_receiving=self.allow_over_receiving,
            version=self.version,
            lines=tuple(line.to_dto() for line in self.lines),
            notes=self.notes,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<PurchaseOrderModel {self.order_number} [{self.status}] v{self.version}>"


# ---------------------------------------------------------------------------
# PurchaseOrderLineModel
# ---------------------------------------------------------------------------


class PurchaseOrderLineModel(TrackedBase):
    """
    A line item on a purchase order.

    Guarantees:
        - (order_id, line_number) and (order_id, product_id) are unique.
        - quantity_received never decreases.
    """

    __tablename__ = "purchase_order_lines"

    __table_args__ = (
        UniqueConstraint("order_id", "line_number", name="uq_po_line_number"),
        UniqueConstraint("order_id", "product_id", name="uq_po_line_product"),
        Index("idx_po_line_product", "product_id"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False,
    )
    quantity_ordered: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_received: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    order: Mapped["PurchaseOrderModel"] = relationship(
        "PurchaseOrderModel",
        back_populates="lines",
    )

    def to_dto(self):
        from procure_modules.purchasing.models import PurchaseOrderLine

        return PurchaseOrderLine(
            id=self.id,
            line_number=self.line_number,
            product_id=self.product_id,
            quantity_ordered=self.quantity_ordered,
            quantity_received=self.quantity_received,
            unit_cost=self.unit_cost,
        )

    def __repr__(self) -> str:
        return (
            f"<PurchaseOrderLineModel #{self.line_number} "
            f"{self.quantity_received}/{self.quantity_ordered}>"
        )


# ---------------------------------------------------------------------------
# StatusHistoryModel
# ---------------------------------------------------------------------------


class StatusHistoryModel(Base):
    """One status transition of one order. Append-only."""

    __tablename__ = "purchase_order_status_history"

    __table_args__ = (
        UniqueConstraint("order_id", "version", name="uq_po_history_version"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=False,
    )
    from_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    # order version produced by this transition; orders the history
    version: Mapped[int] = mapped_column(nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dto(self):
        from procure_kernel.services.auditor_service import as_utc
        from procure_modules.purchasing.models import OrderStatus, StatusHistoryEntry

        return StatusHistoryEntry(
            order_id=self.order_id,
            from_status=OrderStatus(self.from_status) if self.from_status else None,
            to_status=OrderStatus(self.to_status),
            actor_id=self.actor_id,
            occurred_at=as_utc(self.occurred_at),
            reason=self.reason,
        )


# ---------------------------------------------------------------------------
# ReceivingRecordModel
# ---------------------------------------------------------------------------


class ReceivingRecordModel(TrackedBase):
    """
    One delivery applied (or awaiting application) against an order.

    Guarantees:
        - ``receiving_number`` is unique, so a delivery is never applied twice.
        - Frozen once ``approved`` or ``cancelled``.
    """

    __tablename__ = "receiving_records"

    __table_args__ = (
        Index("idx_receiving_order", "order_id"),
        Index("idx_receiving_status", "status"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=False,
    )
    receiving_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    classification: Mapped[str] = mapped_column(String(30), nullable=False)
    inspection_status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    final_receipt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_items: Mapped[int] = mapped_column(nullable=False, default=0)
    total_quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_value: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    rejected_items: Mapped[list | None] = mapped_column(JSON, nullable=True)

    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list["ReceivingLineModel"]] = relationship(
        "ReceivingLineModel",
        back_populates="record",
        cascade="all",
        lazy="selectin",
        order_by="ReceivingLineModel.position",
    )

    def to_dto(self):
        from procure_kernel.services.auditor_service import as_utc
        from procure_modules.purchasing.models import (
            InspectionStatus,
            ReceivingClassification,
            ReceivingRecord,
            ReceivingStatus,
            RejectedItem,
        )

        return ReceivingRecord(
            id=self.id,
            order_id=self.order_id,
            receiving_number=self.receiving_number,
            classification=ReceivingClassification(self.classification),
            inspection_status=InspectionStatus(self.inspection_status),
            status=ReceivingStatus(self.status),
            final_receipt=self.final_receipt,
            total_items=self.total_items,
            total_quantity=self.total_quantity,
            total_value=self.total_value,
            lines=tuple(line.to_dto() for line in self.lines),
            rejected_items=tuple(RejectedItem(**item) for item in (self.rejected_items or [])),
            approved_by_id=self.approved_by_id,
            approved_at=as_utc(self.approved_at) if self.approved_at else None,
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return f"<ReceivingRecordModel {self.receiving_number} [{self.status}/{self.classification}]>"


class ReceivingLineModel(Base):
    """One delivered product within a receiving record."""

    __tablename__ = "receiving_lines"

    __table_args__ = (
        Index("idx_receiving_line_record", "receiving_id"),
    )

    receiving_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("receiving_records.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    line_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_order_lines.id"), nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    quantity_delivered: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_accepted: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_excess: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stock_movements.id"), nullable=True,
    )

    record: Mapped["ReceivingRecordModel"] = relationship(
        "ReceivingRecordModel",
        back_populates="lines",
    )

    def to_dto(self):
        from procure_modules.purchasing.models import ReceivedLine

        return ReceivedLine(
            product_id=self.product_id,
            line_id=self.line_id,
            quantity_delivered=self.quantity_delivered,
            quantity_accepted=self.quantity_accepted,
            quantity_excess=self.quantity_excess,
            unit_cost=self.unit_cost,
            batch_number=self.batch_number,
            expiry_date=self.expiry_date,
            movement_id=self.movement_id,
        )


# ---------------------------------------------------------------------------
# ApprovalRecordModel
# ---------------------------------------------------------------------------


class ApprovalRecordModel(Base):
    """
    One approval decision at one level. Append-only.

    Guarantees:
        - (order_id, level) is unique, so levels for one order strictly
          increase and a level is never decided twice.
    """

    __tablename__ = "approval_records"

    __table_args__ = (
        UniqueConstraint("order_id", "level", name="uq_approval_order_level"),
        Index("idx_approval_status", "status"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    approver_role: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    approver_limit: Mapped[Decimal | None] = mapped_column(nullable=True)
    next_approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    next_approver_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    chain_snapshot: Mapped[list | None] = mapped_column(JSON, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self):
        from procure_kernel.services.auditor_service import as_utc
        from procure_modules.purchasing.models import ApprovalRecord, ApprovalStatus

        return ApprovalRecord(
            id=self.id,
            order_id=self.order_id,
            level=self.level,
            status=ApprovalStatus(self.status),
            approver_id=self.approver_id,
            approver_role=self.approver_role,
            amount=self.amount,
            approver_limit=self.approver_limit,
            decided_at=as_utc(self.decided_at),
            next_approver_id=self.next_approver_id,
            next_approver_role=self.next_approver_role,
            escalation_reason=self.escalation_reason,
            comments=self.comments,
            chain=tuple(self.chain_snapshot or ()),
        )


# ---------------------------------------------------------------------------
# Protection rules
# ---------------------------------------------------------------------------

add_rule(ImmutabilityRule(
    PurchaseOrderModel,
    "PurchaseOrder",
    guarded_fields=frozenset({"status", "order_number", "version"}),
    allow_delete=False,
))
add_rule(ImmutabilityRule(
    PurchaseOrderLineModel,
    "PurchaseOrderLine",
    guarded_fields=frozenset({"quantity_received", "product_id", "order_id"}),
    frozen_when=lambda row: (row.get("quantity_received") or 0) > 0,
))
add_rule(ImmutabilityRule(StatusHistoryModel, "StatusHistory", append_only=True))
add_rule(ImmutabilityRule(ApprovalRecordModel, "ApprovalRecord", append_only=True))
add_rule(ImmutabilityRule(
    ReceivingRecordModel,
    "ReceivingRecord",
    frozen_when=lambda row: row.get("status") in ("approved", "cancelled"),
    allow_delete=False,
))
add_rule(ImmutabilityRule(
    ReceivingLineModel,
    "ReceivingLine",
    frozen_when=lambda row: row.get("movement_id") is not None,
    allow_delete=False,
))
