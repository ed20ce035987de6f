"""Retry policy and per-product lock registry."""

import threading
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from procure_kernel.domain.clock import DeterministicClock
from procure_kernel.exceptions import (
    InsufficientStockError,
    OptimisticLockError,
    RetryExhaustedError,
)
from procure_kernel.services.lock_registry import ProductLockRegistry
from procure_kernel.services.retry_service import RetryPolicy, RetryService, is_transient
from procure_modules._unit_of_work import UnitOfWork


class _Flaky:
    """Fails with ``error`` the first ``failures`` calls, then returns ``"ok"``."""

    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:

    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(initial_delay_seconds=1.0, backoff_multiplier=2.0, max_delay_seconds=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_dict(self):
        policy = RetryPolicy.from_dict({"max_attempts": 5, "initial_delay_seconds": 0.5})
        assert policy.max_attempts == 5
        assert policy.initial_delay_seconds == 0.5
        assert policy.backoff_multiplier == 2.0


class TestRetryService:

    def test_transient_failures_retried(self):
        sleeps = []
        fn = _Flaky(2, OptimisticLockError("Product", "p"))
        service = RetryService(RetryPolicy(max_attempts=3), sleep=sleeps.append)

        assert service.run("op", fn) == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_exhaustion(self):
        rollbacks = []
        fn = _Flaky(10, TimeoutError("lock wait"))
        service = RetryService(RetryPolicy(max_attempts=3), sleep=lambda s: None)

        with pytest.raises(RetryExhaustedError) as exc_info:
            service.run("record_stock_movement", fn, on_retry=lambda: rollbacks.append(1))

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "record_stock_movement"
        assert fn.calls == 3
        assert len(rollbacks) == 3

    def test_validation_failure_not_retried(self):
        fn = _Flaky(1, InsufficientStockError("no"))
        service = RetryService(RetryPolicy(max_attempts=3), sleep=lambda s: None)

        with pytest.raises(InsufficientStockError):
            service.run("op", fn)
        assert fn.calls == 1

    def test_classification(self):
        assert is_transient(OperationalError("SELECT 1", {}, Exception("database is locked")))
        assert is_transient(TimeoutError())
        assert is_transient(OptimisticLockError("Product", "p"))
        assert not is_transient(ValueError())

    def test_pinned_version_conflict_not_retried(self):
        fn = _Flaky(1, OptimisticLockError("PurchaseOrder", "o", retryable=False))
        service = RetryService(RetryPolicy(max_attempts=3), sleep=lambda s: None)

        with pytest.raises(OptimisticLockError):
            service.run("transition_status", fn)
        assert fn.calls == 1


class TestProductLockRegistry:

    def test_same_lock_per_product(self):
        registry = ProductLockRegistry()
        pid = uuid4()
        assert registry.lock_for(pid) is registry.lock_for(pid)

    def test_hold_orders_and_dedupes(self):
        registry = ProductLockRegistry()
        a, b = uuid4(), uuid4()

        with registry.hold([b, a, b]) as held:
            assert held == tuple(sorted({a, b}, key=str))
            assert registry.lock_for(a).locked()
            assert registry.lock_for(b).locked()

        assert not registry.lock_for(a).locked()
        assert not registry.lock_for(b).locked()

    def test_timeout_when_held_elsewhere(self):
        registry = ProductLockRegistry()
        pid = uuid4()
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold([pid]):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(TimeoutError):
                with registry.hold([pid], timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join(5)

    def test_partial_acquisition_released_on_timeout(self):
        registry = ProductLockRegistry()
        first, second = sorted([uuid4(), uuid4()], key=str)
        registry.lock_for(second).acquire()
        try:
            with pytest.raises(TimeoutError):
                with registry.hold([first, second], timeout=0.05):
                    pass
            assert not registry.lock_for(first).locked()
        finally:
            registry.lock_for(second).release()

    def test_released_locks_are_forgotten(self):
        registry = ProductLockRegistry()
        products = [uuid4() for _ in range(50)]

        for pid in products:
            with registry.hold([pid]):
                assert len(registry) == 1

        assert len(registry) == 0


class _Session:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class TestUnitOfWorkLocking:
    """Lock acquisition happens inside each attempt, so a timeout is retried."""

    def _unit(self, registry, sleep, session=None):
        return UnitOfWork(
            session or _Session(),
            DeterministicClock(),
            RetryService(RetryPolicy(max_attempts=3, initial_delay_seconds=0.5), sleep=sleep),
            registry,
            lock_timeout=0.01,
        )

    def test_lock_timeout_retried_then_reported(self):
        registry = ProductLockRegistry()
        pid = uuid4()
        sleeps = []
        calls = []
        lock = registry.lock_for(pid)
        lock.acquire()
        try:
            with pytest.raises(RetryExhaustedError) as exc_info:
                self._unit(registry, sleeps.append).run(
                    "record_stock_movement", lambda: calls.append(1), product_ids=[pid],
                )
        finally:
            lock.release()

        assert exc_info.value.attempts == 3
        assert sleeps == [0.5, 1.0]
        assert calls == []

    def test_lock_freed_between_attempts(self):
        registry = ProductLockRegistry()
        pid = uuid4()
        session = _Session()
        lock = registry.lock_for(pid)
        lock.acquire()

        result = self._unit(registry, lambda s: lock.release(), session).run(
            "record_stock_movement", lambda: "done", product_ids=[pid],
        )

        assert result == "done"
        assert session.commits == 1
