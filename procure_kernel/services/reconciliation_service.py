"""
ReconciliationService -- post-hoc consistency checks and audit gap repair.

Responsibility:
    Verifies that every product's ledger folds to its counter, finds stock
    movements that committed without their audit entry, and re-appends the
    missing entries.

Architecture position:
    Kernel > Services.  Called by the inventory facade.

Invariants enforced:
    - Repair is idempotent: each movement's audit entry carries the key
      ``stock_movement:<id>``, so a second repair writes nothing.
    - A ReconciliationIssue is resolved only once its movement has an audit
      entry.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.values import ActorRef
from procure_kernel.logging_config import get_logger
from procure_kernel.models.audit_event import AuditAction, AuditEvent
from procure_kernel.models.product import Product
from procure_kernel.models.stock_movement import StockMovement
from procure_kernel.models.validation_error import ReconciliationIssue
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.stock_ledger import (
    LedgerVerification,
    StockLedgerService,
    movement_audit_key,
    movement_snapshot,
)

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class AuditRepair:
    movement_id: UUID
    audit_event_id: UUID
    issue_id: UUID | None


class ReconciliationService:
    """
    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        ledger: StockLedgerService,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def verify_stock_integrity(
        self,
        product_ids: list[UUID] | None = None,
    ) -> list[LedgerVerification]:
        """Fold the ledger of each product (all products when None)."""
        if product_ids is None:
            product_ids = list(
                self._session.execute(select(Product.id).order_by(Product.sku)).scalars()
            )
        results = [self._ledger.verify(pid) for pid in product_ids]
        broken = [r for r in results if not r.is_consistent]
        if broken:
            logger.error(
                "stock_integrity_violations",
                extra={
                    "checked": len(results),
                    "inconsistent": [str(r.product_id) for r in broken],
                },
            )
        else:
            logger.info("stock_integrity_verified", extra={"checked": len(results)})
        return results

    def find_unaudited_movements(self) -> list[StockMovement]:
        """Movements with no audit entry under their idempotency key."""
        audited_keys = select(AuditEvent.idempotency_key).where(
            AuditEvent.idempotency_key.like("stock_movement:%")
        )
        keys = set(self._session.execute(audited_keys).scalars())
        movements = self._session.execute(
            select(StockMovement).order_by(StockMovement.product_id, StockMovement.ledger_seq)
        ).scalars().all()
        return [m for m in movements if movement_audit_key(m.id) not in keys]

    def repair_audit_gaps(self, actor: ActorRef) -> list[AuditRepair]:
        """
        Append the missing audit entry for every unaudited movement and
        resolve the matching ReconciliationIssues.
        """
        issues = {
            issue.movement_id: issue
            for issue in self._session.execute(
                select(ReconciliationIssue).where(ReconciliationIssue.resolved.is_(False))
            ).scalars()
        }

        repairs: list[AuditRepair] = []
        for movement in self.find_unaudited_movements():
            snapshot = movement_snapshot(movement)
            event = self._auditor.append(
                entity_type="StockMovement",
                entity_id=movement.id,
                action=AuditAction.STOCK_MOVEMENT,
                actor=actor,
                old_value={"product_id": movement.product_id, "quantity": movement.quantity_before},
                new_value={**snapshot, "quantity": movement.quantity_after},
                reason=movement.notes,
                metadata={"repaired": True, "original_actor_id": movement.actor_id},
                idempotency_key=movement_audit_key(movement.id),
            )
            issue = issues.pop(movement.id, None)
            if issue is not None:
                issue.resolved = True
                issue.resolved_at = self._clock.now()
                issue.audit_event_id = event.id
            repairs.append(
                AuditRepair(
                    movement_id=movement.id,
                    audit_event_id=event.id,
                    issue_id=issue.id if issue is not None else None,
                )
            )

        # Issues whose movement was audited by some other path
        for issue in issues.values():
            existing = self._auditor.find_by_idempotency_key(movement_audit_key(issue.movement_id))
            if existing is not None:
                issue.resolved = True
                issue.resolved_at = self._clock.now()
                issue.audit_event_id = existing.id

        self._session.flush()
        logger.info(
            "audit_gaps_repaired",
            extra={"repaired_count": len(repairs)},
        )
        return repairs

    def open_issues(self) -> list[ReconciliationIssue]:
        return list(
            self._session.execute(
                select(ReconciliationIssue)
                .where(ReconciliationIssue.resolved.is_(False))
                .order_by(ReconciliationIssue.detected_at)
            ).scalars()
        )
