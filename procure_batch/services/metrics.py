"""
PerformanceMonitor -- per-operation durations and health analysis.

Keeps the most recent ``window`` durations per operation name and derives
count, average, min, max and p95.  p95 is the element at index
``floor(n * 0.95)`` of the sorted window (clamped to the last element).

``analyze()`` grades the process:

    critical  any recorded duration above ``critical_duration_ms``
    warning   an operation's p95 above ``warning_p95_ms``, or the lookup
              cache above ``cache_warning_occupancy`` of its capacity
    good      otherwise

and returns one recommendation per finding.
"""

import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager

from procure_batch.config import BatchConfig
from procure_batch.domain.types import OperationStats, PerformanceReport, PerformanceStatus
from procure_batch.services.cache import LookupCache
from procure_kernel.logging_config import get_logger

logger = get_logger("batch.metrics")


def p95(durations: list[float]) -> float:
    if not durations:
        return 0.0
    ordered = sorted(durations)
    return ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]


class PerformanceMonitor:
    """Thread-safe rolling duration store."""

    def __init__(self, config: BatchConfig | None = None):
        self._config = config or BatchConfig.with_defaults()
        self._durations: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def record(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            window = self._durations.get(operation)
            if window is None:
                window = deque(maxlen=self._config.metrics_window)
                self._durations[operation] = window
            window.append(duration_ms)
        if duration_ms > self._config.critical_duration_ms:
            logger.warning(
                "operation_duration_critical",
                extra={
                    "operation": operation,
                    "duration_ms": round(duration_ms, 3),
                    "threshold_ms": self._config.critical_duration_ms,
                },
            )

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        """Record the block's wall time under ``operation``, even if it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(operation, (time.perf_counter() - started) * 1000)

    def durations(self, operation: str) -> list[float]:
        with self._lock:
            return list(self._durations.get(operation, ()))

    def stats(self, operation: str) -> OperationStats:
        values = self.durations(operation)
        if not values:
            return OperationStats(operation, 0, 0.0, 0.0, 0.0, 0.0)
        return OperationStats(
            operation=operation,
            count=len(values),
            average_ms=sum(values) / len(values),
            min_ms=min(values),
            max_ms=max(values),
            p95_ms=p95(values),
        )

    def all_stats(self) -> dict[str, OperationStats]:
        with self._lock:
            names = list(self._durations)
        return {name: self.stats(name) for name in names}

    def analyze(self, cache: LookupCache | None = None) -> PerformanceReport:
        operations = self.all_stats()
        critical: list[str] = []
        warnings: list[str] = []

        for name, stats in operations.items():
            if stats.max_ms > self._config.critical_duration_ms:
                critical.append(
                    f"{name}: slowest call took {stats.max_ms:.0f} ms, above the "
                    f"{self._config.critical_duration_ms:.0f} ms ceiling; check store "
                    "latency and lock contention"
                )
            elif stats.p95_ms > self._config.warning_p95_ms:
                warnings.append(
                    f"{name}: p95 {stats.p95_ms:.0f} ms exceeds "
                    f"{self._config.warning_p95_ms:.0f} ms; reduce chunk size or worker count"
                )

        occupancy = cache.occupancy if cache is not None else 0.0
        if cache is not None and occupancy > self._config.cache_warning_occupancy:
            warnings.append(
                f"lookup cache at {occupancy:.0%} of {cache.capacity} entries; "
                "raise cache_capacity or lower cache_ttl_seconds"
            )

        if critical:
            status = PerformanceStatus.CRITICAL
        elif warnings:
            status = PerformanceStatus.WARNING
        else:
            status = PerformanceStatus.GOOD

        report = PerformanceReport(
            status=status,
            operations=operations,
            cache_occupancy=occupancy,
            cache_hit_rate=cache.hit_rate if cache is not None else 0.0,
            recommendations=tuple(critical + warnings),
        )
        log = logger.info if status is PerformanceStatus.GOOD else logger.warning
        log(
            "performance_analyzed",
            extra={
                "performance_status": status.value,
                "operation_count": len(operations),
                "cache_occupancy": round(occupancy, 4),
                "recommendation_count": len(report.recommendations),
            },
        )
        return report
