"""
BatchProcessor tests.

Verifies:
- One item's failure never aborts the others; failures keep their index
- Failure codes for validation, kernel and unexpected errors
- Cancellation finishes the in-flight chunk and skips the rest
- Adaptive chunking halves toward min_chunk_size under slow chunks
- End to end through InventoryService.batch_apply_stock_updates
"""

import time
from uuid import uuid4

import pytest

from procure_batch.config import BatchConfig
from procure_batch.domain.types import StockUpdate
from procure_batch.services.executor import BatchProcessor
from procure_kernel.domain.clock import DeterministicClock
from procure_kernel.domain.values import ActorRef
from procure_kernel.exceptions import InvalidQuantityError, OptimisticLockError
from procure_kernel.services.lock_registry import ProductLockRegistry
from procure_kernel.services.retry_service import RetryPolicy, RetryService
from procure_modules.inventory.service import InventoryService

ACTOR = ActorRef(actor_id=uuid4(), role="admin")


class _Session:
    closed = False

    def close(self):
        self.closed = True


def _updates(n, **overrides):
    return [StockUpdate(product_id=uuid4(), quantity=1, **overrides) for _ in range(n)]


def _processor(handler, **config):
    config.setdefault("min_chunk_size", 1)
    return BatchProcessor(_Session, handler, config=BatchConfig(**config))


class TestFailureIsolation:

    def test_failures_reported_by_index(self):
        updates = _updates(25)
        bad = {3, 17}

        def handler(session, item, actor):
            if updates.index(item) in bad:
                raise InvalidQuantityError("bad quantity", field="quantity")

        result = _processor(handler, chunk_size=10).run(updates, ACTOR)

        assert result.total == 25
        assert result.processed == 23
        assert [f.index for f in result.failed] == [3, 17]
        assert result.failed[0].item is updates[3]
        assert result.failed[0].error_code == "invalid_quantity"
        assert result.failed[0].error == "invalid quantity"
        assert result.cancelled is False
        assert result.skipped == 0

    def test_kernel_and_unexpected_errors(self):
        updates = _updates(2)

        def handler(session, item, actor):
            if item is updates[0]:
                raise OptimisticLockError("Product", str(item.product_id))
            raise RuntimeError("boom")

        result = _processor(handler, chunk_size=2).run(updates, ACTOR)

        assert result.processed == 0
        assert [f.error_code for f in result.failed] == ["optimistic_lock_conflict", "unexpected_error"]
        assert result.failed[1].error == "boom"

    def test_every_item_gets_its_own_session(self):
        sessions = []

        def factory():
            session = _Session()
            sessions.append(session)
            return session

        processor = BatchProcessor(
            factory, lambda s, i, a: None, config=BatchConfig(chunk_size=5, min_chunk_size=1),
        )
        processor.run(_updates(7), ACTOR)

        assert len(sessions) == 7
        assert all(s.closed for s in sessions)

    def test_empty_batch(self):
        result = _processor(lambda s, i, a: None, chunk_size=5).run([], ACTOR)

        assert result.total == 0
        assert result.processed == 0
        assert result.chunk_sizes == ()


class TestCancellation:

    def test_cancel_finishes_chunk_and_skips_rest(self):
        holder = {}

        def handler(session, item, actor):
            if item.notes == "stop":
                holder["processor"].cancel()

        updates = [StockUpdate(product_id=uuid4(), quantity=1, notes="stop")] + _updates(29)
        processor = _processor(handler, chunk_size=10, max_workers=2, adaptive_chunking=False)
        holder["processor"] = processor

        result = processor.run(updates, ACTOR)

        assert result.cancelled is True
        assert result.processed == 10
        assert result.skipped == 20
        assert result.chunk_sizes == (10,)

    def test_next_run_starts_uncancelled(self):
        processor = _processor(lambda s, i, a: None, chunk_size=5)
        processor.cancel()

        result = processor.run(_updates(5), ACTOR)

        assert result.processed == 5
        assert result.cancelled is False


class TestAdaptiveChunking:

    def test_slow_chunks_halve_down_to_minimum(self):
        def slow(session, item, actor):
            time.sleep(0.002)

        processor = _processor(slow, chunk_size=8, min_chunk_size=2, warning_p95_ms=0.0)

        result = processor.run(_updates(20), ACTOR)

        assert result.chunk_sizes == (8, 4, 2, 2, 2, 2)
        assert result.processed == 20

    def test_fixed_chunks_when_disabled(self):
        processor = _processor(
            lambda s, i, a: None, chunk_size=8, warning_p95_ms=0.0, adaptive_chunking=False,
        )

        result = processor.run(_updates(20), ACTOR)

        assert result.chunk_sizes == (8, 8, 4)

    def test_item_durations_recorded(self):
        processor = _processor(lambda s, i, a: None, chunk_size=4)
        processor.run(_updates(6), ACTOR)

        assert processor.monitor.stats("batch_item").count == 6
        assert processor.monitor.stats("batch_chunk").count == 2


class TestInventoryBatch:

    @pytest.fixture
    def batch_inventory(self, session_factory):
        session = session_factory()
        service = InventoryService(
            session,
            batch_config=BatchConfig(chunk_size=50, min_chunk_size=10, max_workers=4),
            clock=DeterministicClock(),
            retry=RetryService(RetryPolicy(max_attempts=5, initial_delay_seconds=0.0), sleep=lambda s: None),
            locks=ProductLockRegistry(default_timeout=10.0),
            session_factory=session_factory,
        )
        yield service
        session.close()

    def test_150_updates_with_one_invalid(self, batch_inventory):
        products = [
            batch_inventory.register_product(f"SKU-B{i}", f"Batch {i}", "1.00", ACTOR, initial_stock=10).id
            for i in range(5)
        ]
        updates = [StockUpdate(products[i % 5], 2) for i in range(150)]
        updates[73] = StockUpdate(products[3], "not-a-number")

        result = batch_inventory.batch_apply_stock_updates(updates, ACTOR)

        assert result.processed == 149
        assert [(f.index, f.error_code) for f in result.failed] == [(73, "invalid_quantity")]
        expected = {pid: 10 + 2 * sum(1 for i in range(150) if i % 5 == n and i != 73) for n, pid in enumerate(products)}
        for product_id, quantity in expected.items():
            assert batch_inventory.get_current_stock(product_id) == quantity
        assert all(v.is_consistent for v in batch_inventory.verify_stock_integrity(products))

        report = batch_inventory.performance_report()
        assert report.operations["record_stock_movement"].count >= 149
        assert report.operations["batch_item"].count == 150

    def test_items_check_products_through_cache(self, batch_inventory):
        product_id = batch_inventory.register_product("SKU-C1", "Cached", "1.00", ACTOR).id

        result = batch_inventory.batch_apply_stock_updates([StockUpdate(product_id, 1) for _ in range(20)], ACTOR)

        assert result.processed == 20
        assert batch_inventory.performance_report().cache_hit_rate == 1.0

    def test_deactivated_product_rejected(self, batch_inventory):
        product_id = batch_inventory.register_product("SKU-C2", "Retired", "1.00", ACTOR).id
        batch_inventory.deactivate_product(product_id, ACTOR)

        result = batch_inventory.batch_apply_stock_updates([StockUpdate(product_id, 1)], ACTOR)

        assert [(f.index, f.error_code) for f in result.failed] == [(0, "product_inactive")]
        assert batch_inventory.get_current_stock(product_id) == 0
