"""
StockLedgerService -- append-only stock ledger and authoritative counter.

Responsibility:
    Records every signed quantity change of a product as an immutable
    StockMovement, moves ``Product.stock_quantity`` with it, and appends the
    paired audit entry.  Also writes compensating entries and verifies that
    the ledger folds back to the counter.

Architecture position:
    Kernel > Services -- leaf component.  Called by the receiving
    reconciler (receipts), the inventory facade (manual movements) and the
    batch processor (bulk updates).  Callers hold the product lock from
    services/lock_registry.py around the unit of work.

Invariants enforced:
    - quantity_after = quantity_before + quantity_changed on every entry.
    - Stock never goes negative unless the movement type is explicitly
      configured to allow it.
    - The counter moves only through a compare-and-set UPDATE on
      ``Product.version``; each movement bumps the version by one and
      stores it as ``ledger_seq``.  A lost race raises OptimisticLockError
      and nothing is written.
    - Entries are never updated or deleted (ORM listeners); corrections are
      new ``adjustment`` entries with ``compensates_id`` set.
    - In ``joint`` audit mode the movement and its audit entry commit
      together or not at all.  In ``at_least_once`` mode a failed audit
      write leaves the movement in place, records a ReconciliationIssue and
      is reported through ``drain_reconciliation()``.

Failure modes:
    - InvalidQuantityError, ProductInactiveError, InsufficientStockError
      from the Validation Gate (no writes).
    - OptimisticLockError when another writer moved the same product first.
    - AuditWriteError when the audit append fails in joint mode.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import (
    ValidationFailure,
    check_nonzero_delta,
    check_product_active,
    check_stock_sufficient,
    to_decimal,
)
from procure_kernel.domain.values import ActorRef, ErrorKind, MovementType
from procure_kernel.exceptions import (
    AuditWriteError,
    OptimisticLockError,
    ProductNotFoundError,
    StockMovementNotFoundError,
)
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.models.product import Product
from procure_kernel.models.stock_movement import StockMovement
from procure_kernel.models.validation_error import ReconciliationIssue
from procure_kernel.services.auditor_service import AuditorService, as_utc
from procure_kernel.services.validation_gate import ValidationGate

logger = get_logger("services.stock_ledger")

AuditWriteMode = Literal["joint", "at_least_once"]


def movement_audit_key(movement_id: UUID) -> str:
    """Idempotency key tying a movement to its single audit entry."""
    return f"stock_movement:{movement_id}"


def movement_snapshot(movement: StockMovement) -> dict[str, Any]:
    return {
        "product_id": movement.product_id,
        "ledger_seq": movement.ledger_seq,
        "movement_type": movement.movement_type,
        "quantity_before": movement.quantity_before,
        "quantity_changed": movement.quantity_changed,
        "quantity_after": movement.quantity_after,
        "reference_type": movement.reference_type,
        "reference_id": movement.reference_id,
        "compensates_id": movement.compensates_id,
    }


@dataclass(frozen=True)
class StockMovementEntry:
    """Read-side view of one ledger entry."""

    id: UUID
    product_id: UUID
    ledger_seq: int
    movement_type: MovementType
    quantity_before: Decimal
    quantity_changed: Decimal
    quantity_after: Decimal
    reference_type: str | None
    reference_id: UUID | None
    unit_cost: Decimal | None
    total_value: Decimal | None
    actor_id: UUID
    occurred_at: datetime
    batch_number: str | None = None
    expiry_date: date | None = None
    notes: str | None = None
    compensates_id: UUID | None = None

    @classmethod
    def from_model(cls, movement: StockMovement) -> "StockMovementEntry":
        return cls(
            id=movement.id,
            product_id=movement.product_id,
            ledger_seq=movement.ledger_seq,
            movement_type=MovementType(movement.movement_type),
            quantity_before=movement.quantity_before,
            quantity_changed=movement.quantity_changed,
            quantity_after=movement.quantity_after,
            reference_type=movement.reference_type,
            reference_id=movement.reference_id,
            unit_cost=movement.unit_cost,
            total_value=movement.total_value,
            actor_id=movement.actor_id,
            occurred_at=as_utc(movement.occurred_at),
            batch_number=movement.batch_number,
            expiry_date=movement.expiry_date,
            notes=movement.notes,
            compensates_id=movement.compensates_id,
        )


@dataclass(frozen=True)
class LedgerVerification:
    """Result of folding one product's ledger against its counter."""

    product_id: UUID
    counter_quantity: Decimal
    ledger_quantity: Decimal
    movement_count: int
    first_break_seq: int | None = None

    @property
    def is_consistent(self) -> bool:
        return self.first_break_seq is None and self.counter_quantity == self.ledger_quantity


class StockLedgerService:
    """
    Record, compensate and verify stock movements.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT take product locks; the facade does, around the commit.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        gate: ValidationGate,
        clock: Clock | None = None,
        negative_stock_movement_types: frozenset[MovementType] = frozenset(),
        audit_write_mode: AuditWriteMode = "joint",
    ):
        self._session = session
        self._auditor = auditor
        self._gate = gate
        self._clock = clock or SystemClock()
        self._negative_types = frozenset(MovementType(t) for t in negative_stock_movement_types)
        self._audit_write_mode = audit_write_mode
        self._pending_reconciliation: list[tuple[UUID, UUID]] = []

    # Queries

    def _load_product(self, product_id: UUID) -> Product | None:
        return self._session.execute(
            select(Product)
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def current_stock(self, product_id: UUID) -> Decimal:
        product = self._load_product(product_id)
        if product is None:
            raise ProductNotFoundError(str(product_id))
        return product.stock_quantity

    # Writes

    def record(
        self,
        product_id: UUID,
        delta: Decimal | int | str,
        movement_type: MovementType | str,
        reference_id: UUID | None,
        actor: ActorRef,
        *,
        reference_type: str | None = None,
        unit_cost: Decimal | None = None,
        batch_number: str | None = None,
        expiry_date: date | None = None,
        notes: str | None = None,
        compensates_id: UUID | None = None,
    ) -> StockMovement:
        """
        Apply ``delta`` to a product's stock and append the ledger entry.

        Preconditions:
            - The caller holds the product lock and owns the transaction.

        Postconditions:
            - One StockMovement flushed with ledger_seq = previous version + 1.
            - ``Product.stock_quantity`` equals the entry's quantity_after.
            - One AuditEvent (idempotency key ``stock_movement:<id>``) unless
              the audit write failed in at_least_once mode.

        Raises:
            InvalidQuantityError: delta is not a number, or zero (except recount).
            ProductInactiveError: product missing or deactivated.
            InsufficientStockError: result would be negative and the type
                may not go negative.
            OptimisticLockError: the product version moved underneath us.
            AuditWriteError: joint-mode audit append failed.
        """
        kind = MovementType(movement_type)
        self._gate.enforce(
            check_nonzero_delta(delta, allow_zero=kind is MovementType.RECOUNT),
            "Product", product_id,
        )
        quantity = to_decimal(delta)

        product = self._load_product(product_id)
        self._gate.enforce(
            check_product_active(product_id, None if product is None else product.is_active),
            "Product", product_id,
        )

        before = product.stock_quantity
        after = before + quantity
        self._gate.enforce(
            check_stock_sufficient(before, quantity, allow_negative=kind in self._negative_types),
            "Product", product_id,
        )

        expected_version = product.version
        result = self._session.execute(
            update(Product)
            .where(Product.id == product_id, Product.version == expected_version)
            .values(stock_quantity=after, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "stock_counter_cas_conflict",
                extra={"product": str(product_id), "expected_version": expected_version},
            )
            raise OptimisticLockError("Product", str(product_id))

        movement = StockMovement(
            product_id=product_id,
            ledger_seq=expected_version + 1,
            movement_type=kind.value,
            quantity_before=before,
            quantity_changed=quantity,
            quantity_after=after,
            reference_type=reference_type,
            reference_id=reference_id,
            unit_cost=unit_cost,
            total_value=(quantity * unit_cost) if unit_cost is not None else None,
            actor_id=actor.actor_id,
            occurred_at=self._next_timestamp(product_id, expected_version),
            batch_number=batch_number,
            expiry_date=expiry_date,
            notes=notes,
            compensates_id=compensates_id,
        )
        self._session.add(movement)
        self._session.flush()
        self._session.refresh(product)

        self._append_audit(movement, actor, notes)

        logger.info(
            "stock_movement_recorded",
            extra={
                "movement_id": str(movement.id),
                "product": str(product_id),
                "movement_type": kind.value,
                "quantity_before": before,
                "quantity_changed": quantity,
                "quantity_after": after,
                "ledger_seq": movement.ledger_seq,
            },
        )
        return movement

    def _next_timestamp(self, product_id: UUID, previous_seq: int) -> datetime:
        now = as_utc(self._clock.now())
        if previous_seq == 0:
            return now
        last = self._session.execute(
            select(StockMovement.occurred_at).where(
                StockMovement.product_id == product_id,
                StockMovement.ledger_seq == previous_seq,
            )
        ).scalar_one_or_none()
        if last is not None and now < as_utc(last):
            return as_utc(last)
        return now

    def _append_audit(self, movement: StockMovement, actor: ActorRef, reason: str | None) -> None:
        snapshot = movement_snapshot(movement)
        try:
            with self._session.begin_nested():
                self._auditor.append(
                    entity_type="StockMovement",
                    entity_id=movement.id,
                    action=AuditAction.STOCK_MOVEMENT,
                    actor=actor,
                    old_value={"product_id": movement.product_id, "quantity": movement.quantity_before},
                    new_value={**snapshot, "quantity": movement.quantity_after},
                    reason=reason,
                    idempotency_key=movement_audit_key(movement.id),
                )
        except Exception as exc:
            if self._audit_write_mode == "joint":
                logger.error(
                    "audit_write_failed",
                    extra={"movement_id": str(movement.id), "audit_write_mode": "joint"},
                    exc_info=True,
                )
                raise AuditWriteError("StockMovement", str(movement.id), str(exc)) from exc

            issue = ReconciliationIssue(
                movement_id=movement.id,
                product_id=movement.product_id,
                detected_at=self._clock.now(),
                reason=f"{type(exc).__name__}: {exc}",
            )
            self._session.add(issue)
            self._session.flush()
            self._pending_reconciliation.append((movement.id, issue.id))
            logger.error(
                "reconciliation_required",
                extra={
                    "movement_id": str(movement.id),
                    "issue_id": str(issue.id),
                    "audit_write_mode": "at_least_once",
                },
                exc_info=True,
            )

    def drain_reconciliation(self) -> list[tuple[UUID, UUID]]:
        """Return and forget (movement_id, issue_id) pairs recorded since the last drain."""
        pending, self._pending_reconciliation = self._pending_reconciliation, []
        return pending

    def compensate(self, movement_id: UUID, actor: ActorRef, reason: str) -> StockMovement:
        """
        Reverse a prior entry with a new ``adjustment`` entry of opposite sign.

        Raises:
            StockMovementNotFoundError: unknown movement.
            DuplicateItemError: the movement was already compensated.
        """
        original = self._session.get(StockMovement, movement_id)
        if original is None:
            raise StockMovementNotFoundError(str(movement_id))

        already = self._session.execute(
            select(StockMovement.id).where(StockMovement.compensates_id == movement_id)
        ).first()
        self._gate.enforce(
            ValidationFailure(
                kind=ErrorKind.DUPLICATE_ITEM,
                message=f"movement {movement_id} has already been compensated",
                field="compensates_id",
                field_value=str(movement_id),
            ) if already is not None else None,
            "StockMovement", movement_id,
        )

        return self.record(
            original.product_id,
            -original.quantity_changed,
            MovementType.ADJUSTMENT,
            original.id,
            actor,
            reference_type="StockMovement",
            unit_cost=original.unit_cost,
            notes=reason,
            compensates_id=original.id,
        )

    # Verification

    def verify(self, product_id: UUID) -> LedgerVerification:
        """
        Fold the product's entries in ledger order and compare with the counter.

        The fold starts at zero; every entry must start where the previous one
        ended and satisfy after = before + changed.
        """
        counter = self.current_stock(product_id)
        movements = self._session.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.ledger_seq)
        ).scalars().all()

        running = Decimal("0")
        first_break: int | None = None
        for expected_seq, movement in enumerate(movements, start=1):
            consistent = (
                movement.ledger_seq == expected_seq
                and movement.quantity_before == running
                and movement.quantity_after == movement.quantity_before + movement.quantity_changed
            )
            if not consistent and first_break is None:
                first_break = movement.ledger_seq
            running = movement.quantity_after

        verification = LedgerVerification(
            product_id=product_id,
            counter_quantity=counter,
            ledger_quantity=running,
            movement_count=len(movements),
            first_break_seq=first_break,
        )
        log = logger.info if verification.is_consistent else logger.error
        log(
            "stock_ledger_verified",
            extra={
                "product": str(product_id),
                "consistent": verification.is_consistent,
                "counter_quantity": counter,
                "ledger_quantity": running,
                "movement_count": len(movements),
            },
        )
        return verification
