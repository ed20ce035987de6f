"""
Validation error records and audit-gap reconciliation.

Verifies:
- Rejections are persisted, listed and resolved through the facade
- joint mode: a failed audit append rolls the stock change back
- at_least_once mode: the stock change commits, the caller is told, and
  repair_audit_gaps() fills the gap
"""

from uuid import UUID

import pytest

from procure_kernel.exceptions import (
    AuditWriteError,
    InsufficientStockError,
    PermissionDeniedError,
    ReconciliationRequiredError,
    ValidationErrorNotFoundError,
)
from procure_kernel.models.audit_event import AuditAction
from procure_kernel.services.auditor_service import AuditorService
from procure_modules.inventory.config import InventoryConfig
from procure_modules.inventory.service import InventoryService


@pytest.fixture
def rejected_sale(inventory, make_product, admin_actor):
    """A product with stock 1 and one recorded insufficient_stock rejection."""
    product_id = make_product(initial_stock=1)
    with pytest.raises(InsufficientStockError) as exc_info:
        inventory.record_stock_movement(product_id, -2, "sale", admin_actor)
    return product_id, exc_info.value.validation_error_id


@pytest.fixture
def failing_stock_audit(monkeypatch):
    """Call to make every later StockMovement audit append fail; ``undo()`` restores it."""
    original = AuditorService.append

    def append(self, *args, **kwargs):
        entity_type = kwargs.get("entity_type", args[0] if args else None)
        if entity_type == "StockMovement":
            raise RuntimeError("audit store unavailable")
        return original(self, *args, **kwargs)

    def _fail():
        monkeypatch.setattr(AuditorService, "append", append)
        return monkeypatch

    return _fail


def _inventory(session, clock, retry, locks, mode):
    return InventoryService(
        session,
        config=InventoryConfig(audit_write_mode=mode),
        clock=clock,
        retry=retry,
        locks=locks,
    )


class TestValidationErrors:

    def test_rejection_listed_with_details(self, purchasing, rejected_sale, admin_actor):
        product_id, error_id = rejected_sale

        [record] = purchasing.list_validation_errors("Product", product_id, unresolved_only=True)

        assert record.id == error_id
        assert record.error_kind == "insufficient_stock"
        assert record.field_name == "quantity"
        assert record.actor_id == admin_actor.actor_id
        assert record.resolved is False

    def test_resolve_marks_and_audits(self, purchasing, rejected_sale, accountant_actor):
        product_id, error_id = rejected_sale

        resolved = purchasing.resolve_validation_error(error_id, accountant_actor, notes="recounted shelf")

        assert resolved.resolved is True
        assert resolved.resolved_by_id == accountant_actor.actor_id
        assert resolved.resolution_notes == "recounted shelf"
        assert purchasing.list_validation_errors("Product", product_id, unresolved_only=True) == []

        trail = purchasing.get_audit_trail("ValidationError", error_id, accountant_actor)
        assert [e.action for e in trail] == [AuditAction.ERROR_RESOLVED.value]
        assert trail[0].reason == "recounted shelf"

    def test_employee_cannot_resolve(self, purchasing, rejected_sale, employee_actor):
        _, error_id = rejected_sale

        with pytest.raises(PermissionDeniedError):
            purchasing.resolve_validation_error(error_id, employee_actor)

    def test_unknown_error(self, purchasing, admin_actor):
        from uuid import uuid4

        with pytest.raises(ValidationErrorNotFoundError):
            purchasing.resolve_validation_error(uuid4(), admin_actor)


class TestJointAuditWrites:

    def test_audit_failure_rolls_back_stock(
        self, session, deterministic_clock, fast_retry, lock_registry,
        make_product, failing_stock_audit, admin_actor,
    ):
        product_id = make_product()
        failing_stock_audit()
        joint = _inventory(session, deterministic_clock, fast_retry, lock_registry, "joint")

        with pytest.raises(AuditWriteError):
            joint.record_stock_movement(product_id, 5, "adjustment", admin_actor)

        assert joint.get_current_stock(product_id) == 0
        assert list(joint.iter_stock_history(product_id)) == []


class TestAtLeastOnceAuditWrites:

    def test_stock_commits_and_gap_is_repaired(
        self, session, purchasing, deterministic_clock, fast_retry, lock_registry,
        make_product, failing_stock_audit, admin_actor,
    ):
        product_id = make_product(initial_stock=2)
        audit_outage = failing_stock_audit()
        lenient = _inventory(session, deterministic_clock, fast_retry, lock_registry, "at_least_once")

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            lenient.record_stock_movement(product_id, 5, "adjustment", admin_actor)

        assert lenient.get_current_stock(product_id) == 7
        movement_id = UUID(exc_info.value.movement_ids[0])
        assert len(exc_info.value.issue_ids) == 1
        assert purchasing.get_audit_trail("StockMovement", movement_id, admin_actor) == ()

        audit_outage.undo()
        [repair] = lenient.repair_audit_gaps(admin_actor)

        assert repair.movement_id == movement_id
        assert str(repair.issue_id) == exc_info.value.issue_ids[0]
        [entry] = purchasing.get_audit_trail("StockMovement", movement_id, admin_actor)
        assert entry.metadata["repaired"] is True
        assert entry.actor_id == admin_actor.actor_id
        assert lenient.repair_audit_gaps(admin_actor) == []

    def test_repair_requires_permission(self, inventory, employee_actor):
        with pytest.raises(PermissionDeniedError):
            inventory.repair_audit_gaps(employee_actor)
