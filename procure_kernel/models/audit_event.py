"""
Module: procure_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE through the ORM (db/immutability.py).
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      validated by AuditorService.validate_chain().
    - seq is globally unique and increasing, allocated by SequenceService.
    - occurred_at never decreases for one entity.
    - idempotency_key, when present, is unique: a retried append returns the
      existing row instead of writing a second one.

Audit relevance:
    Every order status change, approval decision, receiving record and stock
    movement produces one AuditEvent carrying old/new snapshots.  Replaying
    one entity's events in seq order reconstructs its current state.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from procure_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Action tags recorded in the audit trail."""

    # Order lifecycle
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    EDITED_ITEMS = "edited_items"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PARTIALLY_RECEIVED = "partially_received"
    RECEIVED = "received"
    CANCELLED = "cancelled"
    CLOSED = "closed"
    REOPENED = "reopened"

    # Approvals
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"

    # Receiving
    RECEIVING_RECORDED = "receiving_recorded"
    RECEIVING_APPROVED = "receiving_approved"
    RECEIVING_CANCELLED = "receiving_cancelled"
    PRICE_VARIANCE = "price_variance"

    # Stock
    STOCK_MOVEMENT = "stock_movement"

    # Validation errors
    ERROR_RESOLVED = "error_resolved"

    # Catalog
    PRODUCT_REGISTERED = "product_registered"
    PRODUCT_DEACTIVATED = "product_deactivated"
    UNIT_COST_UPDATED = "unit_cost_updated"
    SUPPLIER_REGISTERED = "supplier_registered"
    SUPPLIER_DEACTIVATED = "supplier_deactivated"


class AuditEvent(Base):
    """
    One hash-chained audit entry.

    prev_hash is None only for the genesis entry.  The model does not check
    hash correctness on insert; AuditorService computes it.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id", "seq"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # "PurchaseOrder", "StockMovement", "ReceivingRecord", "Product", ...
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str | None] = mapped_column(String(50), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    old_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(
        String(200), nullable=True, unique=True,
    )

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
