"""Batch services: processor, lookup cache, performance monitor."""

from procure_batch.services.cache import CacheStats, LookupCache
from procure_batch.services.executor import BatchProcessor, ItemHandler
from procure_batch.services.metrics import PerformanceMonitor, p95

__all__ = [
    "BatchProcessor",
    "CacheStats",
    "ItemHandler",
    "LookupCache",
    "PerformanceMonitor",
    "p95",
]
