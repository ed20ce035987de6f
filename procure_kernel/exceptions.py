"""
Typed exception hierarchy for the procurement kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejected operation must tell the caller exactly what went wrong: the
error kind, the offending field and the context.  Callers catch by type and
read structured attributes; they never parse messages.

    try:
        purchasing.submit_receiving(order_id, items, actor)
    except OverReceivingError as e:
        api_response(code=e.code, kind=e.kind, field=e.field, context=e.context)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ProcureError:

    ProcureError (base)
    |
    +-- ValidationFailedError            (one subclass per error kind)
    |   +-- InsufficientStockError
    |   +-- InvalidQuantityError
    |   +-- PriceMismatchError
    |   +-- SupplierInactiveError
    |   +-- ProductInactiveError
    |   +-- DuplicateItemError
    |   +-- MissingRequiredFieldError
    |   +-- InvalidStatusTransitionError
    |   +-- PermissionDeniedError
    |   +-- ApprovalRequiredError
    |   +-- OverReceivingError
    |   +-- UnderReceivingError
    |
    +-- NotFoundError
    |   +-- OrderNotFoundError
    |   +-- ProductNotFoundError
    |   +-- SupplierNotFoundError
    |   +-- ReceivingRecordNotFoundError
    |   +-- StockMovementNotFoundError
    |   +-- ValidationErrorNotFoundError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |   +-- AuditWriteError
    |
    +-- ReconciliationRequiredError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- RetryExhaustedError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INSUFFICIENT_STOCK          | Decrement would take stock below zero
                | INVALID_QUANTITY            | Zero/negative quantity or cost
                | PRICE_MISMATCH              | Delivered cost outside tolerance
                | SUPPLIER_INACTIVE           | Supplier missing or deactivated
                | PRODUCT_INACTIVE            | Product missing or deactivated
                | DUPLICATE_ITEM              | Same product twice / receiving number reused
                | MISSING_REQUIRED_FIELD      | Required input absent
                | INVALID_STATUS_TRANSITION   | Pair not in the transition table
                | PERMISSION_DENIED           | Actor role may not perform the action
                | APPROVAL_REQUIRED           | Step needs an approval decision first
                | OVER_RECEIVING              | Delivered more than remaining
                | UNDER_RECEIVING             | Final receipt short beyond tolerance
----------------|-----------------------------|-----------------------------------------
Audit           | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
                | AUDIT_WRITE_FAILED          | Audit append failed inside a joint write
                | RECONCILIATION_REQUIRED     | Stock committed without its audit entry
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Compare-and-set lost against a newer version
                | RETRY_EXHAUSTED             | Transient failure persisted past max attempts
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only or guarded field

===============================================================================
HANDLING PATTERNS
===============================================================================

1. VALIDATION FAILURES ARE ALREADY RECORDED.  By the time a
   ValidationFailedError reaches the caller, the facade has persisted a
   ValidationErrorRecord.  Do not record it again.

2. CONCURRENCY ERRORS ARE RETRYABLE.  Re-read the entity and try again;
   OptimisticLockError never means data was overwritten.

3. RECONCILIATION REQUIRED IS NOT SUCCESS.  The stock write committed but
   the audit trail is missing an entry; run repair_audit_gaps().
"""

from typing import Any


class ProcureError(Exception):
    """
    Base exception for all procurement kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "PROCURE_ERROR"


# Validation failures


class ValidationFailedError(ProcureError):
    """
    A Validation Gate predicate rejected a proposed mutation.

    ``kind`` is the lowercase error kind stored on the ValidationErrorRecord.
    """

    code: str = "VALIDATION_FAILED"
    kind: str = "validation_failed"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        field_value: Any = None,
        context: dict[str, Any] | None = None,
        entity_type: str | None = None,
        entity_id: Any = None,
    ):
        self.message = message
        self.field = field
        self.field_value = field_value
        self.context = context or {}
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.validation_error_id: Any = None
        super().__init__(message)

    @property
    def readable_kind(self) -> str:
        """``insufficient_stock`` -> ``insufficient stock``."""
        return self.kind.replace("_", " ")


class InsufficientStockError(ValidationFailedError):
    code: str = "INSUFFICIENT_STOCK"
    kind: str = "insufficient_stock"


class InvalidQuantityError(ValidationFailedError):
    code: str = "INVALID_QUANTITY"
    kind: str = "invalid_quantity"


class PriceMismatchError(ValidationFailedError):
    code: str = "PRICE_MISMATCH"
    kind: str = "price_mismatch"


class SupplierInactiveError(ValidationFailedError):
    code: str = "SUPPLIER_INACTIVE"
    kind: str = "supplier_inactive"


class ProductInactiveError(ValidationFailedError):
    code: str = "PRODUCT_INACTIVE"
    kind: str = "product_inactive"


class DuplicateItemError(ValidationFailedError):
    code: str = "DUPLICATE_ITEM"
    kind: str = "duplicate_item"


class MissingRequiredFieldError(ValidationFailedError):
    code: str = "MISSING_REQUIRED_FIELD"
    kind: str = "missing_required_field"


class InvalidStatusTransitionError(ValidationFailedError):
    code: str = "INVALID_STATUS_TRANSITION"
    kind: str = "invalid_status_transition"


class PermissionDeniedError(ValidationFailedError):
    code: str = "PERMISSION_DENIED"
    kind: str = "permission_denied"


class ApprovalRequiredError(ValidationFailedError):
    code: str = "APPROVAL_REQUIRED"
    kind: str = "approval_required"


class OverReceivingError(ValidationFailedError):
    code: str = "OVER_RECEIVING"
    kind: str = "over_receiving"


class UnderReceivingError(ValidationFailedError):
    code: str = "UNDER_RECEIVING"
    kind: str = "under_receiving"


VALIDATION_ERRORS_BY_KIND: dict[str, type[ValidationFailedError]] = {
    cls.kind: cls
    for cls in (
        InsufficientStockError,
        InvalidQuantityError,
        PriceMismatchError,
        SupplierInactiveError,
        ProductInactiveError,
        DuplicateItemError,
        MissingRequiredFieldError,
        InvalidStatusTransitionError,
        PermissionDeniedError,
        ApprovalRequiredError,
        OverReceivingError,
        UnderReceivingError,
    )
}


# Lookup failures


class NotFoundError(ProcureError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} not found: {entity_id}")


class OrderNotFoundError(NotFoundError):
    code: str = "ORDER_NOT_FOUND"
    entity_type: str = "PurchaseOrder"


class ProductNotFoundError(NotFoundError):
    code: str = "PRODUCT_NOT_FOUND"
    entity_type: str = "Product"


class SupplierNotFoundError(NotFoundError):
    code: str = "SUPPLIER_NOT_FOUND"
    entity_type: str = "Supplier"


class ReceivingRecordNotFoundError(NotFoundError):
    code: str = "RECEIVING_RECORD_NOT_FOUND"
    entity_type: str = "ReceivingRecord"


class StockMovementNotFoundError(NotFoundError):
    code: str = "STOCK_MOVEMENT_NOT_FOUND"
    entity_type: str = "StockMovement"


class ValidationErrorNotFoundError(NotFoundError):
    code: str = "VALIDATION_ERROR_NOT_FOUND"
    entity_type: str = "ValidationErrorRecord"


# Audit-related exceptions


class AuditError(ProcureError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """The audit hash chain does not validate."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


class AuditWriteError(AuditError):
    """An audit append failed while its paired mutation was still uncommitted."""

    code: str = "AUDIT_WRITE_FAILED"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Audit write failed for {entity_type} {entity_id}: {reason}"
        )


class ReconciliationRequiredError(ProcureError):
    """
    Stock movements committed but their paired audit entries did not.

    The movements are durable; the audit trail must be repaired before the
    affected products can be trusted by replay.
    """

    code: str = "RECONCILIATION_REQUIRED"

    def __init__(self, movement_ids: list[str], issue_ids: list[str]):
        self.movement_ids = movement_ids
        self.issue_ids = issue_ids
        super().__init__(
            f"Reconciliation required: {len(movement_ids)} stock movement(s) "
            "committed without audit entries"
        )


# Concurrency-related exceptions


class ConcurrencyError(ProcureError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """
    Optimistic locking conflict detected.

    ``retryable`` is False when the caller pinned the version it expected;
    the caller must re-read and decide again.
    """

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, retryable: bool = True):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.retryable = retryable
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class RetryExhaustedError(ConcurrencyError):
    """A transient failure persisted through every allowed attempt."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: str):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation {operation} failed after {attempts} attempt(s): {last_error}"
        )


# Immutability-related exceptions


class ImmutabilityError(ProcureError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record, or to write a
    guarded field outside its owning service.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
