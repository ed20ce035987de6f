"""
Shared transaction-boundary helper for module facades.

Used by procure_modules/*/service.py so every public write follows the same
sequence:

    retry loop
      -> take product locks (sorted, bounded wait; a timeout is retried)
           -> work()                      kernel services flush only
           -> commit                      success
           -> rollback + record + raise   validation failure
           -> rollback + raise            anything else (retried if transient)
           -> release locks
      -> ReconciliationRequiredError      audit gaps left by at_least_once mode

Architecture: Modules layer. Imports only from procure_kernel.
"""

from collections.abc import Callable, Iterable
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock
from procure_kernel.domain.validation import check_permission
from procure_kernel.domain.values import Action, ActorRef
from procure_kernel.exceptions import ReconciliationRequiredError, ValidationFailedError
from procure_kernel.logging_config import get_logger
from procure_kernel.services.lock_registry import ProductLockRegistry
from procure_kernel.services.retry_service import RetryService
from procure_kernel.services.stock_ledger import StockLedgerService
from procure_kernel.services.validation_gate import ValidationGate

logger = get_logger("modules.unit_of_work")

T = TypeVar("T")


class UnitOfWork:
    """
    Commit/rollback/retry wrapper bound to one session.

    Non-goals:
        - Does NOT open sessions; the facade's session is reused across
          attempts after rollback.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        retry: RetryService,
        locks: ProductLockRegistry,
        lock_timeout: float | None = None,
        ledger: StockLedgerService | None = None,
    ):
        self._session = session
        self._clock = clock
        self._retry = retry
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._ledger = ledger

    def record_validation_error(self, exc: ValidationFailedError, actor: ActorRef | None) -> None:
        """Persist the rejection in its own transaction, after the rollback."""
        try:
            record = ValidationGate(self._session, self._clock).record_error(exc, actor)
            self._session.commit()
        except Exception:
            self._session.rollback()
            logger.exception(
                "validation_error_persist_failed",
                extra={"error_kind": exc.kind, "entity_type": exc.entity_type},
            )
            raise
        exc.validation_error_id = record.id

    def _attempt(self, operation: str, work: Callable[[], T], actor: ActorRef | None) -> T:
        if self._ledger is not None:
            self._ledger.drain_reconciliation()
        try:
            result = work()
            pending = self._ledger.drain_reconciliation() if self._ledger is not None else []
            self._session.commit()
        except ValidationFailedError as exc:
            self._session.rollback()
            logger.info(
                "operation_rejected",
                extra={"operation": operation, "error_kind": exc.kind, "field": exc.field},
            )
            self.record_validation_error(exc, actor)
            raise
        except Exception:
            self._session.rollback()
            raise

        if pending:
            logger.error(
                "reconciliation_required",
                extra={"operation": operation, "movement_count": len(pending)},
            )
            raise ReconciliationRequiredError(
                [str(movement_id) for movement_id, _ in pending],
                [str(issue_id) for _, issue_id in pending],
            )
        return result

    def run(
        self,
        operation: str,
        work: Callable[[], T],
        actor: ActorRef | None = None,
        product_ids: Iterable[UUID] = (),
    ) -> T:
        """Run ``work`` as one committed, retried unit under the product locks."""
        held = [pid for pid in product_ids if pid is not None]

        def locked_attempt() -> T:
            with self._locks.hold(held, timeout=self._lock_timeout):
                return self._attempt(operation, work, actor)

        return self._retry.run(operation, locked_attempt)

    def authorize(
        self,
        access: AccessPolicy,
        actor: ActorRef,
        action: Action,
        entity_type: str,
        entity_id: UUID | None = None,
    ) -> None:
        """Permission check for read paths; a rejection is recorded like any other."""
        gate = ValidationGate(self._session, self._clock)
        try:
            gate.enforce(
                check_permission(actor, action, access.role_permissions),
                entity_type, entity_id,
            )
        except ValidationFailedError as exc:
            self._session.rollback()
            self.record_validation_error(exc, actor)
            raise
