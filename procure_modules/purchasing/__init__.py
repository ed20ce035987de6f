"""
Purchasing Module (``procure_modules.purchasing``).

Responsibility
--------------
Purchase-order lifecycle: creation and line edits, the status state
machine with its history, multi-level approvals, receiving against the
order with over/under-receiving checks, supplier maintenance, and the
audit/validation-error queries that sit beside them.

Architecture position
---------------------
**Modules layer** -- workflows, config schemas, ORM rows, and a service
facade (``PurchasingService``) that owns the transaction boundary and
delegates stock writes to ``procure_kernel.services.stock_ledger``.

Invariants enforced
-------------------
* Status changes only along ``PURCHASE_ORDER_WORKFLOW`` and always leave a
  history row.
* ``quantity_received`` never exceeds ``quantity_ordered`` unless the order
  allows over-receiving.
* Every accepted receiving line has exactly one stock movement.

Failure modes
-------------
* ``ValidationFailedError`` subclasses, each persisted as a
  ``ValidationErrorRecord`` before being raised.
* ``PurchaseOrderNotFoundError`` / ``ReceivingRecordNotFoundError``.
"""

from procure_modules.purchasing.config import ApprovalLevel, PurchasingConfig
from procure_modules.purchasing.models import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalStatus,
    DeliveryItem,
    InspectionStatus,
    LineItemInput,
    OrderStatus,
    PurchaseOrder,
    PurchaseOrderLine,
    ReceivingClassification,
    ReceivingRecord,
    ReceivingStatus,
    StatusHistoryEntry,
)
from procure_modules.purchasing.service import PurchasingService
from procure_modules.purchasing.workflows import ORDER_TRANSITIONS, PURCHASE_ORDER_WORKFLOW

__all__ = [
    "ApprovalDecision",
    "ApprovalLevel",
    "ApprovalRecord",
    "ApprovalStatus",
    "DeliveryItem",
    "InspectionStatus",
    "LineItemInput",
    "ORDER_TRANSITIONS",
    "OrderStatus",
    "PURCHASE_ORDER_WORKFLOW",
    "PurchaseOrder",
    "PurchaseOrderLine",
    "PurchasingConfig",
    "PurchasingService",
    "ReceivingClassification",
    "ReceivingRecord",
    "ReceivingStatus",
    "StatusHistoryEntry",
]
