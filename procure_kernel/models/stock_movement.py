"""
Module: procure_kernel.models.stock_movement
Responsibility: ORM persistence for the append-only stock ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - quantity_after = quantity_before + quantity_changed, computed by
      StockLedgerService and checked again by StockLedgerService.verify().
    - (product_id, ledger_seq) is unique; ledger_seq is the product version
      produced by the movement, so entries for one product form a gapless
      1..n sequence.
    - Rows are never updated or deleted; corrections are compensating
      entries that point at the original through compensates_id.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from procure_kernel.db.base import Base, UUIDString


class StockMovement(Base):
    """One signed quantity change for one product."""

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint("product_id", "ledger_seq", name="uq_stock_movement_product_seq"),
        Index("idx_stock_movement_product_time", "product_id", "occurred_at"),
        Index("idx_stock_movement_type", "movement_type"),
        Index("idx_stock_movement_reference", "reference_type", "reference_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False,
    )
    ledger_seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    quantity_before: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_changed: Mapped[Decimal] = mapped_column(nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(nullable=False)

    # "PurchaseOrder", "ReceivingRecord", "Sale", "StockMovement", ...
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(nullable=True)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    batch_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    compensates_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stock_movements.id"), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type} {self.quantity_before}"
            f"{self.quantity_changed:+} -> {self.quantity_after}>"
        )
