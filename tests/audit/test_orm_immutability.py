"""
ORM immutability tests.

Verifies:
- Append-only rows (stock movements, audit events, status history,
  approval records) cannot be updated or deleted through the ORM
- Guarded fields (stock counter, order status, quantity received) cannot
  be assigned directly
- Metadata fields stay writable
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from procure_kernel.exceptions import ImmutabilityViolationError
from procure_kernel.models.audit_event import AuditEvent
from procure_kernel.models.product import Product
from procure_kernel.models.stock_movement import StockMovement
from procure_modules.purchasing.models import DeliveryItem, OrderStatus
from procure_modules.purchasing.orm import (
    PurchaseOrderLineModel,
    PurchaseOrderModel,
    ReceivingLineModel,
    ReceivingRecordModel,
    StatusHistoryModel,
)


def _flush_blocked(session) -> ImmutabilityViolationError:
    with pytest.raises(ImmutabilityViolationError) as exc_info:
        session.flush()
    session.rollback()
    return exc_info.value


class TestAppendOnlyRows:
    """Validates: history rows are never edited or removed in place."""

    def test_stock_movement_update_blocked(self, session, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=5)
        entry = inventory.record_stock_movement(product_id, 1, "adjustment", admin_actor)

        movement = session.get(StockMovement, entry.id)
        movement.quantity_changed = Decimal("100")
        error = _flush_blocked(session)
        assert error.entity_type == "StockMovement"

    def test_stock_movement_delete_blocked(self, session, inventory, make_product, admin_actor):
        product_id = make_product(initial_stock=5)
        entry = inventory.record_stock_movement(product_id, 1, "adjustment", admin_actor)

        session.delete(session.get(StockMovement, entry.id))
        _flush_blocked(session)

    def test_audit_event_update_blocked(self, session, make_product):
        make_product()
        event = session.execute(select(AuditEvent).limit(1)).scalar_one()
        event.reason = "rewritten"
        error = _flush_blocked(session)
        assert error.entity_type == "AuditEvent"

    def test_status_history_delete_blocked(self, session, purchasing, sent_order, make_product):
        order = sent_order([(make_product(), 1)])
        row = session.execute(
            select(StatusHistoryModel).where(StatusHistoryModel.order_id == order.id).limit(1)
        ).scalar_one()
        session.delete(row)
        _flush_blocked(session)


class TestGuardedFields:
    """Validates: counters and statuses move only through their owning service."""

    def test_direct_stock_assignment_blocked(self, session, make_product):
        product = session.get(Product, make_product(initial_stock=5))
        product.stock_quantity = Decimal("999")
        error = _flush_blocked(session)
        assert "stock_quantity" in error.reason

    def test_product_name_stays_editable(self, session, make_product):
        product = session.get(Product, make_product())
        product.name = "Renamed"
        session.flush()
        assert session.get(Product, product.id).name == "Renamed"

    def test_direct_status_assignment_blocked(self, session, purchasing, sent_order, make_product):
        order = sent_order([(make_product(), 1)])
        model = session.get(PurchaseOrderModel, order.id)
        model.status = OrderStatus.RECEIVED.value
        error = _flush_blocked(session)
        assert error.entity_type == "PurchaseOrder"

    def test_direct_quantity_received_assignment_blocked(self, session, sent_order, make_product):
        order = sent_order([(make_product(), 4)])
        line = session.get(PurchaseOrderLineModel, order.lines[0].id)
        line.quantity_received = Decimal("4")
        _flush_blocked(session)

    def test_orders_cannot_be_deleted(self, session, sent_order, make_product):
        order = sent_order([(make_product(), 1)])
        session.delete(session.get(PurchaseOrderModel, order.id))
        _flush_blocked(session)


class TestFrozenRows:
    """Validates: rows freeze on their stored state, not their in-memory state."""

    def _receive(self, purchasing, sent_order, make_product, admin_actor):
        product_id = make_product()
        order = sent_order([(product_id, 10)])
        return purchasing.submit_receiving(order.id, [DeliveryItem(product_id, 4)], admin_actor)

    def test_null_column_can_be_filled_once(self, session, purchasing, sent_order, make_product, admin_actor):
        record = self._receive(purchasing, sent_order, make_product, admin_actor)

        line = session.execute(
            select(ReceivingLineModel).where(ReceivingLineModel.receiving_id == record.id)
        ).scalar_one()
        assert line.movement_id is not None

        line.quantity_accepted = Decimal("10")
        error = _flush_blocked(session)
        assert error.entity_type == "ReceivingLine"

    def test_expired_approved_record_stays_frozen(
        self, session, purchasing, sent_order, make_product, admin_actor,
    ):
        record = self._receive(purchasing, sent_order, make_product, admin_actor)

        model = session.get(ReceivingRecordModel, record.id)
        session.expire(model)
        model.status = "draft"
        error = _flush_blocked(session)
        assert error.entity_type == "ReceivingRecord"
