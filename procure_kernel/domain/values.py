"""
Kernel value objects shared by every procurement component.

Pure, immutable, zero I/O.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID


class MovementType(str, Enum):
    """Why a product's stock quantity changed."""

    PURCHASE_RECEIPT = "purchase_receipt"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    RETURN = "return"
    DAMAGE = "damage"
    EXPIRY = "expiry"
    SHRINKAGE = "shrinkage"
    RECOUNT = "recount"
    MANUAL = "manual"


class ErrorKind(str, Enum):
    """Every way the Validation Gate can reject a mutation."""

    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_QUANTITY = "invalid_quantity"
    PRICE_MISMATCH = "price_mismatch"
    SUPPLIER_INACTIVE = "supplier_inactive"
    PRODUCT_INACTIVE = "product_inactive"
    DUPLICATE_ITEM = "duplicate_item"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    INVALID_STATUS_TRANSITION = "invalid_status_transition"
    PERMISSION_DENIED = "permission_denied"
    APPROVAL_REQUIRED = "approval_required"
    OVER_RECEIVING = "over_receiving"
    UNDER_RECEIVING = "under_receiving"


class Action(str, Enum):
    """Actions a role may be permitted to perform."""

    CREATE = "create"
    EDIT = "edit"
    SUBMIT = "submit"
    APPROVE = "approve"
    SEND = "send"
    RECEIVE = "receive"
    CANCEL = "cancel"
    CLOSE = "close"
    REOPEN = "reopen"
    ADJUST_STOCK = "adjust_stock"
    VIEW_AUDIT_TRAIL = "view_audit_trail"
    RESOLVE_ERRORS = "resolve_errors"


@dataclass(frozen=True)
class ActorRef:
    """
    Who is performing an operation.

    ``approval_limit`` overrides the role's configured limit when set;
    ``None`` means "use the role default".
    """

    actor_id: UUID
    role: str
    approval_limit: Decimal | None = None

    def __post_init__(self) -> None:
        if not self.role:
            raise ValueError("ActorRef.role must be non-empty")
