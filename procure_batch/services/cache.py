"""
LookupCache -- bounded LRU cache with TTL for product and movement lookups.

Entries expire ``ttl_seconds`` after they were stored; the least recently
used entry is evicted when a new key would exceed capacity.  Time comes
from an injectable monotonic source so tests can step it.

Thread-safe: one lock guards the ordered map and the counters.
"""

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any

from procure_kernel.logging_config import get_logger

logger = get_logger("batch.cache")

_MISSING = object()


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class LookupCache:
    """In-memory LRU + TTL cache."""

    def __init__(
        self,
        capacity: int = 500,
        ttl_seconds: float = 300.0,
        now: Callable[[], float] = time.monotonic,
        name: str = "lookup",
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._now = now
        self._name = name
        self._entries: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()
        self._stats = CacheStats()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def hit_rate(self) -> float:
        return self._stats.hit_rate

    @property
    def occupancy(self) -> float:
        """Fraction of capacity in use, 0.0 to 1.0."""
        return len(self) / self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Value for ``key``; refreshes its recency.  Expired entries miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return default
            value, expires_at = entry
            if self._now() >= expires_at:
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return default
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug(
                    "cache_evicted",
                    extra={"cache": self._name, "cache_key": str(evicted)},
                )
            self._entries[key] = (value, self._now() + self._ttl)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Cached value, or ``loader()`` stored under ``key``.  None is not cached."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            if self._entries.pop(key, None) is None:
                return False
            self._stats.invalidations += 1
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
