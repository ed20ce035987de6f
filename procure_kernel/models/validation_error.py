"""
Module: procure_kernel.models.validation_error
Responsibility: ORM persistence for ValidationErrorRecords and
    ReconciliationIssues.
Architecture position: Kernel > Models.  May import from db/base.py only.

A ValidationErrorRecord is written for every mutation the Validation Gate
rejects, in its own transaction, so it survives the rollback of the
operation it describes.  Only the resolution fields change afterwards.

A ReconciliationIssue marks a stock movement that committed without its
paired audit entry.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from procure_kernel.db.base import Base, UUIDString


class ValidationErrorRecord(Base):
    """One rejected mutation."""

    __tablename__ = "validation_errors"

    __table_args__ = (
        Index("idx_validation_error_entity", "entity_type", "entity_id"),
        Index("idx_validation_error_kind", "error_kind"),
        Index("idx_validation_error_resolved", "resolved"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    error_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    field_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ValidationErrorRecord {self.error_kind} on {self.entity_type}:{self.entity_id}>"


class ReconciliationIssue(Base):
    """A stock movement whose audit entry is missing."""

    __tablename__ = "reconciliation_issues"

    __table_args__ = (
        Index("idx_reconciliation_issue_resolved", "resolved"),
    )

    movement_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    audit_event_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
