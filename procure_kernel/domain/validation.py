"""
Validation predicates (``procure_kernel.domain.validation``).

Responsibility
--------------
The pure half of the Validation Gate.  Each predicate inspects values the
caller already holds and returns a ``ValidationFailure`` describing the
problem, or ``None`` when the input is legal.  Nothing here reads the
database, raises, or logs; ``services/validation_gate.py`` turns failures
into persisted ValidationErrorRecords and typed exceptions.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.  May import only
from ``domain/values``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from procure_kernel.domain.values import Action, ActorRef, ErrorKind

_EMPTY = (None, "")


@dataclass(frozen=True)
class ValidationFailure:
    """One rejected check: the kind, the offending field and its context."""

    kind: ErrorKind
    message: str
    field: str | None = None
    field_value: Any = None
    context: dict[str, Any] = dataclasses.field(default_factory=dict)


def to_decimal(value: Any) -> Decimal | None:
    """Coerce a quantity-like value to Decimal; ``None`` when impossible."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    return result if result.is_finite() else None


def check_required(value: Any, field_name: str) -> ValidationFailure | None:
    if value in _EMPTY or (isinstance(value, (list, tuple, dict, set)) and not value):
        return ValidationFailure(
            kind=ErrorKind.MISSING_REQUIRED_FIELD,
            message=f"{field_name} is required",
            field=field_name,
            field_value=value,
        )
    return None


def check_positive_quantity(value: Any, field_name: str = "quantity") -> ValidationFailure | None:
    quantity = to_decimal(value)
    if quantity is None or quantity <= 0:
        return ValidationFailure(
            kind=ErrorKind.INVALID_QUANTITY,
            message=f"{field_name} must be a positive number, got {value!r}",
            field=field_name,
            field_value=value,
        )
    return None


def check_non_negative(value: Any, field_name: str) -> ValidationFailure | None:
    amount = to_decimal(value)
    if amount is None or amount < 0:
        return ValidationFailure(
            kind=ErrorKind.INVALID_QUANTITY,
            message=f"{field_name} must not be negative, got {value!r}",
            field=field_name,
            field_value=value,
        )
    return None


def check_nonzero_delta(value: Any, allow_zero: bool = False) -> ValidationFailure | None:
    delta = to_decimal(value)
    if delta is None or (delta == 0 and not allow_zero):
        return ValidationFailure(
            kind=ErrorKind.INVALID_QUANTITY,
            message=f"stock delta must be a non-zero number, got {value!r}",
            field="quantity",
            field_value=value,
        )
    return None


def check_no_duplicate_products(
    product_ids: Iterable[Any],
    field_name: str = "line_items",
) -> ValidationFailure | None:
    seen: set[Any] = set()
    for product_id in product_ids:
        if product_id in seen:
            return ValidationFailure(
                kind=ErrorKind.DUPLICATE_ITEM,
                message=f"product {product_id} appears more than once",
                field=field_name,
                field_value=str(product_id),
            )
        seen.add(product_id)
    return None


def check_supplier_active(supplier_id: Any, is_active: bool | None) -> ValidationFailure | None:
    """``is_active=None`` means the supplier does not exist."""
    if is_active:
        return None
    return ValidationFailure(
        kind=ErrorKind.SUPPLIER_INACTIVE,
        message=(
            f"supplier {supplier_id} does not exist"
            if is_active is None
            else f"supplier {supplier_id} is inactive"
        ),
        field="supplier_id",
        field_value=str(supplier_id),
        context={"found": is_active is not None},
    )


def check_product_active(product_id: Any, is_active: bool | None) -> ValidationFailure | None:
    """``is_active=None`` means the product does not exist."""
    if is_active:
        return None
    return ValidationFailure(
        kind=ErrorKind.PRODUCT_INACTIVE,
        message=(
            f"product {product_id} does not exist"
            if is_active is None
            else f"product {product_id} is inactive"
        ),
        field="product_id",
        field_value=str(product_id),
        context={"found": is_active is not None},
    )


def check_permission(
    actor: ActorRef,
    action: Action,
    role_permissions: Mapping[str, frozenset[str]],
) -> ValidationFailure | None:
    allowed = role_permissions.get(actor.role, frozenset())
    if action.value in allowed:
        return None
    return ValidationFailure(
        kind=ErrorKind.PERMISSION_DENIED,
        message=f"role {actor.role!r} may not perform {action.value!r}",
        field="actor.role",
        field_value=actor.role,
        context={"action": action.value, "actor_id": str(actor.actor_id)},
    )


def check_stock_sufficient(
    quantity_before: Decimal,
    delta: Decimal,
    allow_negative: bool = False,
) -> ValidationFailure | None:
    after = quantity_before + delta
    if after >= 0 or allow_negative:
        return None
    return ValidationFailure(
        kind=ErrorKind.INSUFFICIENT_STOCK,
        message=(
            f"stock {quantity_before} cannot absorb a change of {delta}"
        ),
        field="quantity",
        field_value=str(delta),
        context={
            "quantity_before": str(quantity_before),
            "quantity_after": str(after),
        },
    )


def check_transition_allowed(
    current: str,
    target: str,
    transitions: Mapping[str, frozenset[str]],
) -> ValidationFailure | None:
    if target in transitions.get(current, frozenset()):
        return None
    return ValidationFailure(
        kind=ErrorKind.INVALID_STATUS_TRANSITION,
        message=f"cannot transition from {current!r} to {target!r}",
        field="status",
        field_value=target,
        context={
            "current_status": current,
            "allowed": sorted(transitions.get(current, frozenset())),
        },
    )


def check_price_within_tolerance(
    expected: Decimal,
    actual: Decimal,
    tolerance_percent: Decimal,
) -> ValidationFailure | None:
    if expected == 0:
        variance_percent = Decimal("0") if actual == 0 else Decimal("100")
    else:
        variance_percent = abs(actual - expected) / expected * 100
    if variance_percent <= tolerance_percent:
        return None
    return ValidationFailure(
        kind=ErrorKind.PRICE_MISMATCH,
        message=(
            f"unit cost {actual} differs from ordered {expected} by "
            f"{variance_percent.quantize(Decimal('0.01'))}%"
        ),
        field="unit_cost",
        field_value=str(actual),
        context={
            "expected_unit_cost": str(expected),
            "tolerance_percent": str(tolerance_percent),
        },
    )


def first_failure(*results: ValidationFailure | None) -> ValidationFailure | None:
    """Return the first non-None failure, in argument order."""
    for result in results:
        if result is not None:
            return result
    return None
