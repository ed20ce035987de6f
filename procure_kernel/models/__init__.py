"""Domain models for the procurement kernel."""

from procure_kernel.models.audit_event import AuditAction, AuditEvent
from procure_kernel.models.product import Product, Supplier
from procure_kernel.models.stock_movement import StockMovement
from procure_kernel.models.validation_error import (
    ReconciliationIssue,
    ValidationErrorRecord,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Product",
    "Supplier",
    "StockMovement",
    "ValidationErrorRecord",
    "ReconciliationIssue",
]
