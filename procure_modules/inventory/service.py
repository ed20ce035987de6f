"""
Inventory Module Service (``procure_modules.inventory.service``).

Responsibility
--------------
Public entry point for the stock ledger: product registration, single and
batched stock movements, compensation, current stock, paged history,
summaries, and ledger/audit integrity checks.

Architecture position
---------------------
**Modules layer** -- thin glue over ``StockLedgerService``,
``StockSelector``, ``CatalogService`` and ``ReconciliationService``, with
batches delegated to ``procure_batch.BatchProcessor``.

Invariants enforced
-------------------
* Every stock write holds the product lock, commits or rolls back as one
  unit, and is retried on transient failure (``UnitOfWork``).
* Stock never goes negative unless the movement type is configured to.
* History is read-only and restartable by continuation offset.

Failure modes
-------------
* ValidationFailedError subclasses (already recorded).
* ProductNotFoundError / StockMovementNotFoundError.
* RetryExhaustedError, ReconciliationRequiredError (see PurchasingService).

Usage::

    inventory = InventoryService(session, clock=clock)
    inventory.record_stock_movement(product_id, -5, MovementType.SALE, actor)
    page = inventory.get_stock_history(product_id, limit=50)
    result = inventory.batch_apply_stock_updates(updates, actor)
"""

from collections.abc import Callable, Iterator, Sequence
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from procure_batch.config import BatchConfig
from procure_batch.domain.types import BatchResult, PerformanceReport, StockUpdate
from procure_batch.services.cache import LookupCache
from procure_batch.services.executor import BatchProcessor
from procure_batch.services.metrics import PerformanceMonitor
from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import check_permission, check_product_active
from procure_kernel.domain.values import Action, ActorRef, MovementType
from procure_kernel.exceptions import ProductNotFoundError, StockMovementNotFoundError
from procure_kernel.logging_config import LogContext, get_logger
from procure_kernel.models.product import Product
from procure_kernel.models.stock_movement import StockMovement
from procure_kernel.selectors.stock_selector import StockHistoryPage, StockSelector, StockSummary
from procure_kernel.services.auditor_service import AuditorService
from procure_kernel.services.catalog_service import CatalogService
from procure_kernel.services.lock_registry import ProductLockRegistry, default_lock_registry
from procure_kernel.services.reconciliation_service import AuditRepair, ReconciliationService
from procure_kernel.services.retry_service import RetryPolicy, RetryService
from procure_kernel.services.stock_ledger import (
    LedgerVerification,
    StockLedgerService,
    StockMovementEntry,
)
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules._unit_of_work import UnitOfWork
from procure_modules.inventory.config import InventoryConfig
from procure_modules.inventory.models import ProductInfo

logger = get_logger("modules.inventory.service")


class InventoryService:
    """
    Orchestrates stock operations through the kernel.

    Contract
    --------
    * Write methods return frozen DTOs read before commit.
    * ``batch_apply_stock_updates`` opens one session per item from
      ``session_factory`` and never raises for an item's failure.

    Non-goals
    ---------
    * Does NOT value inventory.  Receipts move ``unit_cost`` (see
      PurchasingService); this service only carries it.
    """

    def __init__(
        self,
        session: Session,
        config: InventoryConfig | None = None,
        access: AccessPolicy | None = None,
        batch_config: BatchConfig | None = None,
        clock: Clock | None = None,
        retry: RetryService | None = None,
        locks: ProductLockRegistry | None = None,
        session_factory: Callable[[], Session] | None = None,
        product_cache: LookupCache | None = None,
        movement_cache: LookupCache | None = None,
        monitor: PerformanceMonitor | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or InventoryConfig.with_defaults()
        self._access = access or AccessPolicy.with_defaults()
        self._batch_config = batch_config or BatchConfig.with_defaults()
        self._retry = retry or RetryService(RetryPolicy.with_defaults())
        self._locks = locks or default_lock_registry
        self._session_factory = session_factory or sessionmaker(
            bind=session.get_bind(), expire_on_commit=False,
        )

        self._auditor = AuditorService(session, self._clock)
        self._gate = ValidationGate(session, self._clock)
        self._ledger = StockLedgerService(
            session,
            self._auditor,
            self._gate,
            clock=self._clock,
            negative_stock_movement_types=self._config.negative_stock_movement_types,
            audit_write_mode=self._config.audit_write_mode,
        )
        self._catalog = CatalogService(session, self._auditor, self._gate, self._clock)
        self._reconciliation = ReconciliationService(
            session, self._ledger, self._auditor, self._clock,
        )
        self._selector = StockSelector(session)

        self._product_cache = product_cache or LookupCache(
            self._batch_config.cache_capacity,
            self._batch_config.cache_ttl_seconds,
            name="products",
        )
        self._movement_cache = movement_cache or LookupCache(
            self._batch_config.cache_capacity,
            self._batch_config.cache_ttl_seconds,
            name="movements",
        )
        self._monitor = monitor or PerformanceMonitor(self._batch_config)

        self._uow = UnitOfWork(
            session,
            self._clock,
            self._retry,
            self._locks,
            lock_timeout=self._config.lock_timeout_seconds,
            ledger=self._ledger,
        )

    def _require(self, actor: ActorRef, action: Action, entity_type: str, entity_id: UUID | None = None) -> None:
        self._gate.enforce(
            check_permission(actor, action, self._access.role_permissions),
            entity_type, entity_id,
        )

    # =========================================================================
    # Products
    # =========================================================================

    def register_product(
        self,
        sku: str,
        name: str,
        unit_cost: Decimal | int | str,
        actor: ActorRef,
        initial_stock: Decimal | int | str | None = None,
    ) -> ProductInfo:
        """
        Add a product to the catalog.  ``initial_stock`` is booked as a
        ``recount`` movement so the ledger explains the opening balance.
        """
        def work() -> ProductInfo:
            self._require(actor, Action.ADJUST_STOCK, "Product")
            product = self._catalog.register_product(sku, name, unit_cost, actor)
            if initial_stock is not None:
                self._ledger.record(
                    product.id,
                    initial_stock,
                    MovementType.RECOUNT,
                    None,
                    actor,
                    notes="opening balance",
                )
            return ProductInfo.from_model(self._catalog.get_product(product.id))

        with LogContext.bind(actor_id=str(actor.actor_id)):
            info = self._uow.run("register_product", work, actor)
        self._product_cache.set(info.id, info)
        return info

    def deactivate_product(self, product_id: UUID, actor: ActorRef, reason: str | None = None) -> ProductInfo:
        def work() -> ProductInfo:
            self._require(actor, Action.ADJUST_STOCK, "Product", product_id)
            return ProductInfo.from_model(self._catalog.deactivate_product(product_id, actor, reason))

        with LogContext.bind(actor_id=str(actor.actor_id), product_id=str(product_id)):
            info = self._uow.run("deactivate_product", work, actor, product_ids=[product_id])
        self._product_cache.invalidate(product_id)
        return info

    def _cached_product(self, product_id: UUID) -> ProductInfo | None:
        def load() -> ProductInfo | None:
            product = self._session.get(Product, product_id)
            return None if product is None else ProductInfo.from_model(product)

        return self._product_cache.get_or_load(product_id, load)

    def get_product(self, product_id: UUID) -> ProductInfo:
        """Catalog entry, served from the lookup cache when fresh."""
        info = self._cached_product(product_id)
        if info is None:
            raise ProductNotFoundError(str(product_id))
        return info

    # =========================================================================
    # Movements
    # =========================================================================

    def record_stock_movement(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        movement_type: MovementType | str,
        actor: ActorRef,
        reference_id: UUID | None = None,
        reference_type: str | None = None,
        unit_cost: Decimal | None = None,
        notes: str | None = None,
    ) -> StockMovementEntry:
        """
        Apply one signed stock change.

        Raises:
            InvalidQuantityError, ProductInactiveError, InsufficientStockError,
            PermissionDeniedError.
        """
        return self._record_movement(
            product_id, quantity, movement_type, actor,
            reference_id=reference_id,
            reference_type=reference_type,
            unit_cost=unit_cost,
            notes=notes,
        )

    def _record_movement(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        movement_type: MovementType | str,
        actor: ActorRef,
        *,
        reference_id: UUID | None = None,
        reference_type: str | None = None,
        unit_cost: Decimal | None = None,
        notes: str | None = None,
        cached_precheck: bool = False,
    ) -> StockMovementEntry:
        def work() -> StockMovementEntry:
            self._require(actor, Action.ADJUST_STOCK, "Product", product_id)
            if cached_precheck:
                # cached rejections only; the ledger re-reads active rows
                info = self._cached_product(product_id)
                self._gate.enforce(
                    check_product_active(product_id, None if info is None else info.is_active),
                    "Product", product_id,
                )
            movement = self._ledger.record(
                product_id,
                quantity,
                movement_type,
                reference_id,
                actor,
                reference_type=reference_type,
                unit_cost=unit_cost,
                notes=notes,
            )
            return StockMovementEntry.from_model(movement)

        with LogContext.bind(actor_id=str(actor.actor_id), product_id=str(product_id)):
            with self._monitor.measure("record_stock_movement"):
                entry = self._uow.run("record_stock_movement", work, actor, product_ids=[product_id])
        self._movement_cache.set(entry.id, entry)
        return entry

    def compensate_movement(self, movement_id: UUID, actor: ActorRef, reason: str) -> StockMovementEntry:
        """Reverse a movement with a new ``adjustment`` entry."""
        original = self.get_movement(movement_id)
        # locks are taken before the write transaction starts
        self._session.rollback()

        def work() -> StockMovementEntry:
            self._require(actor, Action.ADJUST_STOCK, "StockMovement", movement_id)
            return StockMovementEntry.from_model(self._ledger.compensate(movement_id, actor, reason))

        with LogContext.bind(actor_id=str(actor.actor_id), product_id=str(original.product_id)):
            entry = self._uow.run(
                "compensate_movement", work, actor, product_ids=[original.product_id],
            )
        self._movement_cache.set(entry.id, entry)
        return entry

    def get_movement(self, movement_id: UUID) -> StockMovementEntry:
        """Movements never change, so a cached entry is always valid until TTL."""
        def load() -> StockMovementEntry | None:
            movement = self._session.get(StockMovement, movement_id)
            return None if movement is None else StockMovementEntry.from_model(movement)

        entry = self._movement_cache.get_or_load(movement_id, load)
        if entry is None:
            raise StockMovementNotFoundError(str(movement_id))
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get_current_stock(self, product_id: UUID) -> Decimal:
        return self._ledger.current_stock(product_id)

    def get_stock_history(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> StockHistoryPage:
        """One page of movements in ``[start, end)``; ``next_offset`` continues it."""
        return self._selector.history_page(
            product_id, start, end, offset, limit or self._config.history_page_size,
        )

    def iter_stock_history(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
    ) -> Iterator[StockMovementEntry]:
        return self._selector.iter_history(
            product_id, start, end, self._config.history_page_size, offset,
        )

    def get_stock_summary(
        self,
        product_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> StockSummary:
        return self._selector.summary(product_id, start, end)

    # =========================================================================
    # Integrity
    # =========================================================================

    def verify_stock_integrity(self, product_ids: list[UUID] | None = None) -> list[LedgerVerification]:
        """Fold each product's ledger and compare it with the live counter."""
        results = self._reconciliation.verify_stock_integrity(product_ids)
        broken = [r for r in results if not r.is_consistent]
        log = logger.error if broken else logger.info
        log(
            "stock_integrity_verified",
            extra={"product_count": len(results), "inconsistent_count": len(broken)},
        )
        return results

    def repair_audit_gaps(self, actor: ActorRef) -> list[AuditRepair]:
        """Append the audit entries that at_least_once mode left missing."""
        def work() -> list[AuditRepair]:
            self._require(actor, Action.RESOLVE_ERRORS, "StockMovement")
            return self._reconciliation.repair_audit_gaps(actor)

        with LogContext.bind(actor_id=str(actor.actor_id)):
            return self._uow.run("repair_audit_gaps", work, actor)

    # =========================================================================
    # Batch
    # =========================================================================

    def _apply_batch_item(self, session: Session, update: StockUpdate, actor: ActorRef) -> None:
        InventoryService(
            session,
            config=self._config,
            access=self._access,
            batch_config=self._batch_config,
            clock=self._clock,
            retry=self._retry,
            locks=self._locks,
            session_factory=self._session_factory,
            product_cache=self._product_cache,
            movement_cache=self._movement_cache,
            monitor=self._monitor,
        )._record_movement(
            update.product_id,
            update.quantity,
            update.movement_type,
            actor,
            reference_id=update.reference_id,
            reference_type=update.reference_type,
            unit_cost=update.unit_cost,
            notes=update.notes,
            cached_precheck=True,
        )

    def batch_processor(self) -> BatchProcessor:
        """A processor wired to this service's configuration, cache and monitor."""
        return BatchProcessor(
            self._session_factory,
            self._apply_batch_item,
            config=self._batch_config,
            monitor=self._monitor,
            cache=self._product_cache,
        )

    def batch_apply_stock_updates(
        self,
        updates: Sequence[StockUpdate],
        actor: ActorRef,
        processor: BatchProcessor | None = None,
    ) -> BatchResult:
        """
        Apply many updates with bounded concurrency.

        Returns ``BatchResult(processed, failed=[BatchFailure(index, item,
        error_code, error)])``; an item's failure never aborts the others.
        """
        processor = processor or self.batch_processor()
        return processor.run(updates, actor)

    def performance_report(self) -> PerformanceReport:
        return self._monitor.analyze(self._product_cache)
