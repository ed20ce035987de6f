"""
ProductLockRegistry -- per-product exclusive sections.

Responsibility:
    Serializes stock mutations for one product inside this process while
    letting different products proceed in parallel.  Cross-process safety
    comes from the compare-and-set UPDATE on ``Product.version``; the lock
    keeps same-process writers from losing that race in the first place.

Invariants enforced:
    - Locks for several products are always taken in sorted id order, so
      two operations touching overlapping product sets cannot deadlock.
    - Acquisition is bounded by a timeout; a timeout raises the builtin
      TimeoutError, which RetryService treats as transient.
    - A product's lock is dropped once no ``hold`` references it and it is
      unlocked, so the registry only tracks products in use.

Usage:
    with locks.hold([product_a, product_b], timeout=30):
        ... write stock, commit ...
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from uuid import UUID

from procure_kernel.logging_config import get_logger

logger = get_logger("services.lock_registry")


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class ProductLockRegistry:
    """Lazily created ``threading.Lock`` per product id, refcounted by ``hold``."""

    def __init__(self, default_timeout: float = 30.0):
        self._entries: dict[UUID, _Entry] = {}
        self._guard = threading.Lock()
        self._default_timeout = default_timeout

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def lock_for(self, product_id: UUID) -> threading.Lock:
        with self._guard:
            return self._entry(product_id).lock

    def _entry(self, product_id: UUID) -> _Entry:
        entry = self._entries.get(product_id)
        if entry is None:
            entry = _Entry()
            self._entries[product_id] = entry
        return entry

    def _checkout(self, product_id: UUID) -> threading.Lock:
        with self._guard:
            entry = self._entry(product_id)
            entry.holders += 1
            return entry.lock

    def _checkin(self, product_id: UUID) -> None:
        with self._guard:
            entry = self._entries.get(product_id)
            if entry is None:
                return
            entry.holders -= 1
            if entry.holders <= 0 and not entry.lock.locked():
                del self._entries[product_id]

    @contextmanager
    def hold(
        self,
        product_ids: Iterable[UUID],
        timeout: float | None = None,
    ) -> Iterator[tuple[UUID, ...]]:
        """Hold every product's lock for the duration of the block."""
        wait = self._default_timeout if timeout is None else timeout
        ordered = tuple(sorted(set(product_ids), key=str))
        checked_out: list[UUID] = []
        acquired: list[threading.Lock] = []
        try:
            for product_id in ordered:
                lock = self._checkout(product_id)
                checked_out.append(product_id)
                if not lock.acquire(timeout=wait):
                    logger.warning(
                        "product_lock_timeout",
                        extra={"lock_product_id": str(product_id), "timeout_seconds": wait},
                    )
                    raise TimeoutError(
                        f"timed out after {wait}s waiting for product {product_id}"
                    )
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for product_id in checked_out:
                self._checkin(product_id)


default_lock_registry = ProductLockRegistry()
