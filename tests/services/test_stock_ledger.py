"""
Stock ledger tests.

Verifies:
- Every movement appends one entry whose before/after bracket the counter
- Negative stock is refused unless the movement type allows it
- Compensation reverses an entry exactly once
- History paging, summaries and integrity verification
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from procure_kernel.domain.values import MovementType
from procure_kernel.exceptions import (
    DuplicateItemError,
    InsufficientStockError,
    InvalidQuantityError,
    PermissionDeniedError,
    ProductInactiveError,
    ProductNotFoundError,
    StockMovementNotFoundError,
)
from procure_kernel.models.product import Product
from procure_modules.inventory.config import InventoryConfig
from procure_modules.inventory.service import InventoryService


class TestRecordMovement:

    def test_sale_decrements_and_appends(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=20)

        entry = inventory.record_stock_movement(product_id, -5, MovementType.SALE, admin_actor)

        assert entry.ledger_seq == 2
        assert entry.quantity_before == 20
        assert entry.quantity_changed == -5
        assert entry.quantity_after == 15
        assert entry.actor_id == admin_actor.actor_id
        assert inventory.get_current_stock(product_id) == 15

    def test_opening_balance_is_a_recount(self, inventory, make_product):
        product_id = make_product(initial_stock=8)

        first = next(inventory.iter_stock_history(product_id))
        assert first.movement_type == MovementType.RECOUNT
        assert first.ledger_seq == 1
        assert first.quantity_after == 8

    def test_unit_cost_sets_total_value(self, inventory, make_product, admin_actor):
        product_id = make_product()

        entry = inventory.record_stock_movement(
            product_id, 4, "adjustment", admin_actor, unit_cost=Decimal("2.50"),
        )

        assert entry.total_value == Decimal("10.00")

    def test_insufficient_stock_rejected_and_recorded(self, purchasing, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=3)

        with pytest.raises(InsufficientStockError) as exc_info:
            inventory.record_stock_movement(product_id, -4, "sale", admin_actor)

        assert inventory.get_current_stock(product_id) == 3
        errors = purchasing.list_validation_errors("Product", product_id)
        assert [e.id for e in errors] == [exc_info.value.validation_error_id]
        assert errors[0].error_kind == "insufficient_stock"

    def test_negative_allowed_for_configured_type(
        self, session, deterministic_clock, fast_retry, lock_registry, make_product, admin_actor,
    ):
        product_id = make_product(initial_stock=1)
        lenient = InventoryService(
            session,
            config=InventoryConfig(negative_stock_movement_types=frozenset({MovementType.DAMAGE})),
            clock=deterministic_clock,
            retry=fast_retry,
            locks=lock_registry,
        )

        entry = lenient.record_stock_movement(product_id, -5, "damage", admin_actor)
        assert entry.quantity_after == -4

        with pytest.raises(InsufficientStockError):
            lenient.record_stock_movement(product_id, -1, "sale", admin_actor)

    def test_zero_delta_only_for_recount(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=5)

        entry = inventory.record_stock_movement(product_id, 0, "recount", admin_actor)
        assert entry.quantity_changed == 0
        assert entry.quantity_after == 5

        with pytest.raises(InvalidQuantityError):
            inventory.record_stock_movement(product_id, 0, "sale", admin_actor)

    def test_inactive_product_rejected(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=5)
        inventory.deactivate_product(product_id, admin_actor)

        with pytest.raises(ProductInactiveError):
            inventory.record_stock_movement(product_id, 1, "adjustment", admin_actor)

    def test_unknown_product_rejected(self, inventory, admin_actor):
        with pytest.raises(ProductInactiveError) as exc_info:
            inventory.record_stock_movement(uuid4(), 1, "adjustment", admin_actor)

        assert exc_info.value.context == {"found": False}

    def test_unknown_movement_type(self, inventory, make_product, admin_actor):
        product_id = make_product()

        with pytest.raises(ValueError):
            inventory.record_stock_movement(product_id, 1, "gift", admin_actor)

    def test_employee_cannot_adjust(self, inventory, make_product, employee_actor):
        product_id = make_product(initial_stock=5)

        with pytest.raises(PermissionDeniedError):
            inventory.record_stock_movement(product_id, -1, "sale", employee_actor)


class TestCompensation:

    def test_compensation_reverses_once(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=10)
        sale = inventory.record_stock_movement(product_id, -3, "sale", admin_actor)

        reversal = inventory.compensate_movement(sale.id, admin_actor, reason="keyed twice")

        assert reversal.movement_type == MovementType.ADJUSTMENT
        assert reversal.quantity_changed == 3
        assert reversal.compensates_id == sale.id
        assert reversal.reference_id == sale.id
        assert inventory.get_current_stock(product_id) == 10

        with pytest.raises(DuplicateItemError):
            inventory.compensate_movement(sale.id, admin_actor, reason="again")
        assert inventory.get_current_stock(product_id) == 10

    def test_compensation_needs_stock(self, inventory, make_product, admin_actor):
        product_id = make_product()
        receipt = inventory.record_stock_movement(product_id, 5, "adjustment", admin_actor)
        inventory.record_stock_movement(product_id, -4, "sale", admin_actor)

        with pytest.raises(InsufficientStockError):
            inventory.compensate_movement(receipt.id, admin_actor, reason="wrong product")

    def test_unknown_movement(self, inventory, admin_actor):
        with pytest.raises(StockMovementNotFoundError):
            inventory.compensate_movement(uuid4(), admin_actor, reason="?")


class TestHistory:

    def test_pages(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=10)
        for _ in range(4):
            inventory.record_stock_movement(product_id, -1, "sale", admin_actor)

        page = inventory.get_stock_history(product_id, limit=2)
        assert [e.ledger_seq for e in page.entries] == [1, 2]
        assert page.next_offset == 2

        last = inventory.get_stock_history(product_id, offset=4, limit=2)
        assert [e.ledger_seq for e in last.entries] == [5]
        assert last.next_offset is None

        assert [e.ledger_seq for e in inventory.iter_stock_history(product_id)] == [1, 2, 3, 4, 5]

    def test_range_is_half_open(self, inventory, make_product, deterministic_clock, admin_actor):
        product_id = make_product(initial_stock=10)
        deterministic_clock.set_time(datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc))
        inventory.record_stock_movement(product_id, -2, "sale", admin_actor)
        deterministic_clock.set_time(datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc))
        inventory.record_stock_movement(product_id, -1, "sale", admin_actor)

        page = inventory.get_stock_history(
            product_id,
            start=datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc),
            end=datetime(2024, 1, 3, 9, 0, tzinfo=timezone.utc),
        )

        assert [e.quantity_changed for e in page.entries] == [-2]

    def test_bad_paging_arguments(self, inventory, make_product):
        product_id = make_product()

        with pytest.raises(ValueError):
            inventory.get_stock_history(product_id, offset=-1)

    def test_summary(self, inventory, make_product, admin_actor, manager_actor):
        product_id = make_product(initial_stock=10)
        inventory.record_stock_movement(product_id, -4, "sale", admin_actor)
        inventory.record_stock_movement(product_id, 6, "return", manager_actor)

        summary = inventory.get_stock_summary(product_id)

        assert summary.total_in == 16
        assert summary.total_out == 4
        assert summary.net_change == 12
        assert summary.movement_count == 3
        assert summary.distinct_actors == 2


class TestIntegrity:

    def test_clean_ledger_verifies(self, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=10)
        inventory.record_stock_movement(product_id, -3, "sale", admin_actor)

        [result] = inventory.verify_stock_integrity([product_id])

        assert result.is_consistent
        assert result.movement_count == 2
        assert result.ledger_quantity == 7

    def test_counter_drift_detected(self, session, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=10)
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Decimal("11"))
            .execution_options(synchronize_session=False)
        )

        [result] = inventory.verify_stock_integrity([product_id])

        assert not result.is_consistent
        assert result.counter_quantity == 11
        assert result.ledger_quantity == 10

    def test_all_products_checked_by_default(self, inventory, make_product):
        ids = {make_product(initial_stock=1), make_product(initial_stock=2)}

        results = inventory.verify_stock_integrity()

        assert ids <= {r.product_id for r in results}


class TestCatalog:

    def test_product_served_from_cache(self, inventory, make_product):
        product_id = make_product(unit_cost="4.25")

        first = inventory.get_product(product_id)
        second = inventory.get_product(product_id)

        assert first is second
        assert first.unit_cost == Decimal("4.25")

    def test_deactivation_invalidates_cache(self, inventory, make_product, admin_actor):
        product_id = make_product()
        assert inventory.get_product(product_id).is_active

        inventory.deactivate_product(product_id, admin_actor, reason="discontinued")

        assert inventory.get_product(product_id).is_active is False

    def test_unknown_product(self, inventory):
        with pytest.raises(ProductNotFoundError):
            inventory.get_product(uuid4())

    def test_duplicate_sku(self, inventory, make_product, admin_actor):
        make_product(sku="SKU-DUP")

        with pytest.raises(DuplicateItemError):
            inventory.register_product("SKU-DUP", "Again", "1.00", admin_actor)
