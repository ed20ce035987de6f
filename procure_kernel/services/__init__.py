"""Services for the procurement kernel (write side)."""

from procure_kernel.services.auditor_service import AuditLogEntry, AuditorService
from procure_kernel.services.catalog_service import CatalogService
from procure_kernel.services.lock_registry import ProductLockRegistry, default_lock_registry
from procure_kernel.services.reconciliation_service import AuditRepair, ReconciliationService
from procure_kernel.services.retry_service import RetryPolicy, RetryService
from procure_kernel.services.sequence_service import SequenceService
from procure_kernel.services.stock_ledger import (
    LedgerVerification,
    StockLedgerService,
    StockMovementEntry,
)
from procure_kernel.services.validation_gate import ValidationGate

__all__ = [
    "AuditLogEntry",
    "AuditRepair",
    "AuditorService",
    "CatalogService",
    "LedgerVerification",
    "ProductLockRegistry",
    "ReconciliationService",
    "RetryPolicy",
    "RetryService",
    "SequenceService",
    "StockLedgerService",
    "StockMovementEntry",
    "ValidationGate",
    "default_lock_registry",
]
