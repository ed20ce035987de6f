"""
Purchasing Module Service (``procure_modules.purchasing.service``).

Responsibility
--------------
Single public entry point for the purchase-order lifecycle: creation and
draft edits, status transitions, multi-level approval decisions, receiving
(immediate or approved later), supplier registration, and the read side
(orders, history, audit trail, validation errors).

Architecture position
---------------------
**Modules layer** -- composes the purchasing components
(``PurchaseOrderManager``, ``OrderStateMachine``, ``ApprovalEngine``,
``ReceivingReconciler``) over kernel services (``AuditorService``,
``ValidationGate``, ``StockLedgerService``, ``CatalogService``) that all
share one session.

Invariants enforced
-------------------
* Each public write owns the transaction boundary (``commit`` on success,
  ``rollback`` on failure or exception), through ``UnitOfWork``.
* A rejected write leaves no partial state; its ValidationErrorRecord is
  committed separately after the rollback.
* Receiving holds the product locks for every delivered product, in
  sorted order, from before its first read until after commit.
* Transient store failures are retried with exponential backoff.

Failure modes
-------------
* ValidationFailedError subclasses, already recorded.
* OrderNotFoundError / ReceivingRecordNotFoundError / SupplierNotFoundError.
* OptimisticLockError when ``expected_version`` is stale.
* RetryExhaustedError when a transient failure outlives the retry policy.
* ReconciliationRequiredError after commit when stock was written without
  its audit entry (``audit_write_mode="at_least_once"`` only).

Usage::

    service = PurchasingService(session, clock=clock)
    order = service.create_order(
        supplier_id,
        [LineItemInput(product_id=sku_a, quantity=100)],
        actor=manager,
    )
    service.transition_status(order.id, OrderStatus.PENDING_APPROVAL, manager)
    service.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager)
    service.transition_status(order.id, OrderStatus.SENT_TO_SUPPLIER, manager)
    service.submit_receiving(order.id, [DeliveryItem(sku_a, 60)], manager)
"""

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, SystemClock
from procure_kernel.domain.validation import check_permission
from procure_kernel.domain.values import Action, ActorRef
from procure_kernel.logging_config import LogContext, get_logger
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.models.validation_error import ValidationErrorRecord
from procure_kernel.services.auditor_service import AuditLogEntry, AuditorService
from procure_kernel.services.catalog_service import CatalogService
from procure_kernel.services.lock_registry import ProductLockRegistry, default_lock_registry
from procure_kernel.services.retry_service import RetryPolicy, RetryService
from procure_kernel.services.stock_ledger import StockLedgerService
from procure_kernel.services.validation_gate import ValidationGate
from procure_modules._unit_of_work import UnitOfWork
from procure_modules.inventory.config import InventoryConfig
from procure_modules.purchasing.approval import ApprovalEngine
from procure_modules.purchasing.config import PurchasingConfig
from procure_modules.purchasing.models import (
    ApprovalDecision,
    ApprovalRecord,
    DeliveryItem,
    LineItemInput,
    OrderStatus,
    PurchaseOrder,
    ReceivingRecord,
    StatusHistoryEntry,
)
from procure_modules.purchasing.orders import PurchaseOrderManager
from procure_modules.purchasing.orm import ReceivingLineModel, ReceivingRecordModel
from procure_modules.purchasing.receiving import ReceivingReconciler, load_receiving
from procure_modules.purchasing.state_machine import OrderStateMachine, load_order

logger = get_logger("modules.purchasing.service")


def _actor_context(actor: ActorRef, order_id: UUID | None = None):
    return LogContext.bind(
        actor_id=str(actor.actor_id),
        order_id=None if order_id is None else str(order_id),
    )


class PurchasingService:
    """
    Orchestrates purchasing operations through the kernel.

    Contract
    --------
    * Write methods return frozen DTOs from ``purchasing.models``, read
      after commit.
    * Read methods never write, except that a permission rejection on a
      guarded read is recorded like any other validation failure.

    Non-goals
    ---------
    * Does NOT send orders to suppliers; ``sent_to_supplier`` is a status.
    * Does NOT own product stock; receiving goes through the stock ledger.
    """

    def __init__(
        self,
        session: Session,
        config: PurchasingConfig | None = None,
        access: AccessPolicy | None = None,
        inventory_config: InventoryConfig | None = None,
        clock: Clock | None = None,
        retry: RetryService | None = None,
        locks: ProductLockRegistry | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or PurchasingConfig.with_defaults()
        self._access = access or AccessPolicy.with_defaults()
        inventory_config = inventory_config or InventoryConfig.with_defaults()

        # Kernel services (one session, caller-owned transaction)
        self._auditor = AuditorService(session, self._clock)
        self._gate = ValidationGate(session, self._clock)
        self._ledger = StockLedgerService(
            session,
            self._auditor,
            self._gate,
            clock=self._clock,
            negative_stock_movement_types=inventory_config.negative_stock_movement_types,
            audit_write_mode=inventory_config.audit_write_mode,
        )
        self._catalog = CatalogService(session, self._auditor, self._gate, self._clock)

        # Purchasing components
        self._state_machine = OrderStateMachine(
            session, self._auditor, self._gate, self._access, self._clock,
        )
        self._orders = PurchaseOrderManager(
            session, self._auditor, self._gate, self._access, self._config, self._clock,
        )
        self._approvals = ApprovalEngine(
            session, self._auditor, self._gate, self._state_machine,
            self._access, self._config, self._clock,
        )
        self._receiving = ReceivingReconciler(
            session, self._auditor, self._gate, self._ledger, self._state_machine,
            self._access, self._config, self._clock,
        )

        self._uow = UnitOfWork(
            session,
            self._clock,
            retry or RetryService(RetryPolicy.with_defaults()),
            locks or default_lock_registry,
            lock_timeout=inventory_config.lock_timeout_seconds,
            ledger=self._ledger,
        )

    @property
    def config(self) -> PurchasingConfig:
        return self._config

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(
        self,
        supplier_id: UUID,
        line_items: Sequence[LineItemInput],
        actor: ActorRef,
        order_number: str | None = None,
        currency: str | None = None,
        allow_over_receiving: bool | None = None,
        notes: str | None = None,
    ) -> PurchaseOrder:
        """Create a purchase order in ``draft``."""
        with _actor_context(actor):
            logger.info(
                "purchasing_create_order_started",
                extra={"supplier_id": str(supplier_id), "line_count": len(line_items)},
            )
            order = self._uow.run(
                "create_order",
                lambda: self._orders.create(
                    supplier_id, line_items, actor,
                    order_number=order_number,
                    currency=currency,
                    allow_over_receiving=allow_over_receiving,
                    notes=notes,
                ).to_dto(),
                actor,
            )
            logger.info(
                "purchasing_create_order_committed",
                extra={"order_number": order.order_number, "total_amount": order.total_amount},
            )
            return order

    def update_line_items(
        self,
        order_id: UUID,
        line_items: Sequence[LineItemInput],
        actor: ActorRef,
        reason: str | None = None,
    ) -> PurchaseOrder:
        """Replace a draft order's lines."""
        with _actor_context(actor, order_id):
            return self._uow.run(
                "update_line_items",
                lambda: self._orders.update_line_items(order_id, line_items, actor, reason).to_dto(),
                actor,
            )

    def transition_status(
        self,
        order_id: UUID,
        target_status: OrderStatus | str,
        actor: ActorRef,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> OrderStatus:
        """
        Request a manual status change.

        ``approved``, ``partially_received`` and ``received`` are reached only
        through approval decisions and receiving.
        """
        with _actor_context(actor, order_id):
            order = self._uow.run(
                "transition_status",
                lambda: self._state_machine.transition(
                    order_id, target_status, actor,
                    reason=reason,
                    expected_version=expected_version,
                ).to_dto(),
                actor,
            )
            return order.status

    def get_order(self, order_id: UUID) -> PurchaseOrder:
        return load_order(self._session, order_id).to_dto()

    def get_status_history(self, order_id: UUID) -> tuple[StatusHistoryEntry, ...]:
        load_order(self._session, order_id)
        return tuple(row.to_dto() for row in self._state_machine.history(order_id))

    def replay_order_status(self, order_id: UUID) -> OrderStatus | None:
        """The order's status rebuilt from its audit entries alone."""
        return self._orders.replay_status(order_id)

    # =========================================================================
    # Approvals
    # =========================================================================

    def submit_approval_decision(
        self,
        order_id: UUID,
        level: int,
        decision: ApprovalDecision | str,
        actor: ActorRef,
        amount: Decimal | int | str | None = None,
        next_approver_id: UUID | None = None,
        comments: str | None = None,
    ) -> ApprovalRecord:
        with _actor_context(actor, order_id):
            logger.info(
                "purchasing_approval_decision_started",
                extra={"level": level, "decision": str(ApprovalDecision(decision).value)},
            )
            return self._uow.run(
                "submit_approval_decision",
                lambda: self._approvals.decide(
                    order_id, level, decision, actor,
                    amount=amount,
                    next_approver_id=next_approver_id,
                    comments=comments,
                ).to_dto(),
                actor,
            )

    def get_approval_records(self, order_id: UUID) -> tuple[ApprovalRecord, ...]:
        return tuple(record.to_dto() for record in self._approvals.records_for(order_id))

    def current_approval_level(self, order_id: UUID) -> int:
        return self._approvals.current_level(order_id)

    # =========================================================================
    # Receiving
    # =========================================================================

    def submit_receiving(
        self,
        order_id: UUID,
        items: Sequence[DeliveryItem],
        actor: ActorRef,
        receiving_number: str | None = None,
        final_receipt: bool = False,
        notes: str | None = None,
    ) -> ReceivingRecord:
        """
        Receive one delivery.

        Accepted items update stock and the order in one transaction; items
        that fail are excluded, reported on the record and persisted as
        ValidationErrorRecords.
        """
        with _actor_context(actor, order_id):
            logger.info(
                "purchasing_receiving_started",
                extra={"item_count": len(items), "receiving_number": receiving_number},
            )
            record = self._uow.run(
                "submit_receiving",
                lambda: self._receiving.reconcile(
                    order_id, items, actor,
                    receiving_number=receiving_number,
                    final_receipt=final_receipt,
                    notes=notes,
                ).to_dto(),
                actor,
                product_ids=[item.product_id for item in items],
            )
            logger.info(
                "purchasing_receiving_committed",
                extra={
                    "receiving_number": record.receiving_number,
                    "classification": record.classification.value,
                    "receiving_status": record.status.value,
                    "rejected_count": len(record.rejected_items),
                },
            )
            return record

    def _receiving_product_ids(self, receiving_id: UUID) -> list[UUID]:
        try:
            return list(
                self._session.execute(
                    select(ReceivingLineModel.product_id).where(
                        ReceivingLineModel.receiving_id == receiving_id
                    )
                ).scalars()
            )
        finally:
            # locks are taken before the write transaction starts
            self._session.rollback()

    def approve_receiving(self, receiving_id: UUID, actor: ActorRef) -> ReceivingRecord:
        """Apply a pending receiving record (``require_receiving_approval``)."""
        with _actor_context(actor):
            return self._uow.run(
                "approve_receiving",
                lambda: self._receiving.approve(receiving_id, actor).to_dto(),
                actor,
                product_ids=self._receiving_product_ids(receiving_id),
            )

    def cancel_receiving(
        self,
        receiving_id: UUID,
        actor: ActorRef,
        reason: str | None = None,
    ) -> ReceivingRecord:
        with _actor_context(actor):
            return self._uow.run(
                "cancel_receiving",
                lambda: self._receiving.cancel(receiving_id, actor, reason).to_dto(),
                actor,
            )

    def get_receiving_record(self, receiving_id: UUID) -> ReceivingRecord:
        return load_receiving(self._session, receiving_id).to_dto()

    def get_receiving_records(self, order_id: UUID) -> tuple[ReceivingRecord, ...]:
        rows = self._session.execute(
            select(ReceivingRecordModel)
            .where(ReceivingRecordModel.order_id == order_id)
            .order_by(ReceivingRecordModel.created_at, ReceivingRecordModel.receiving_number)
        ).scalars()
        return tuple(row.to_dto() for row in rows)

    # =========================================================================
    # Suppliers
    # =========================================================================

    def register_supplier(
        self,
        code: str,
        name: str,
        actor: ActorRef,
        contact_email: str | None = None,
    ) -> UUID:
        def work() -> UUID:
            self._gate.enforce(
                check_permission(actor, Action.CREATE, self._access.role_permissions), "Supplier",
            )
            return self._catalog.register_supplier(code, name, actor, contact_email=contact_email).id

        with _actor_context(actor):
            return self._uow.run("register_supplier", work, actor)

    def deactivate_supplier(self, supplier_id: UUID, actor: ActorRef, reason: str | None = None) -> None:
        def work() -> None:
            self._gate.enforce(
                check_permission(actor, Action.CREATE, self._access.role_permissions), "Supplier", supplier_id,
            )
            self._catalog.deactivate_supplier(supplier_id, actor, reason)

        with _actor_context(actor):
            self._uow.run("deactivate_supplier", work, actor)

    # =========================================================================
    # Audit and validation errors
    # =========================================================================

    def get_audit_trail(
        self,
        entity_type: str,
        entity_id: UUID,
        actor: ActorRef,
    ) -> tuple[AuditLogEntry, ...]:
        """Every audit entry for one entity, in sequence order."""
        self._uow.authorize(self._access, actor, Action.VIEW_AUDIT_TRAIL, entity_type, entity_id)
        return self._auditor.get_trail(entity_type, entity_id)

    def get_recent_activity(self, actor: ActorRef, limit: int = 50) -> tuple[AuditLogEntry, ...]:
        self._uow.authorize(self._access, actor, Action.VIEW_AUDIT_TRAIL, "AuditEvent")
        return self._auditor.get_recent_events(limit)

    def validate_audit_chain(self) -> bool:
        return self._auditor.validate_chain()

    def list_validation_errors(
        self,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        unresolved_only: bool = False,
    ) -> list[ValidationErrorRecord]:
        return self._gate.list_errors(entity_type, entity_id, unresolved_only)

    def resolve_validation_error(
        self,
        error_id: UUID,
        actor: ActorRef,
        notes: str | None = None,
    ) -> ValidationErrorRecord:
        def work() -> ValidationErrorRecord:
            self._gate.enforce(
                check_permission(actor, Action.RESOLVE_ERRORS, self._access.role_permissions),
                "ValidationError", error_id,
            )
            record = self._gate.resolve(error_id, actor, notes)
            self._auditor.append(
                entity_type="ValidationError",
                entity_id=error_id,
                action=AuditAction.ERROR_RESOLVED,
                actor=actor,
                old_value={"resolved": False},
                new_value={"resolved": True},
                reason=notes,
            )
            return record

        with _actor_context(actor):
            return self._uow.run("resolve_validation_error", work, actor)

