"""
BatchProcessor -- chunked, bounded-concurrency stock updates.

Contract:
    ``run(updates, actor)`` applies every update through an injected item
    handler and returns ``BatchResult(processed, failed, cancelled,
    skipped)``.  ``cancel()`` stops scheduling further chunks.

Architecture: procure_batch/services.  Imports from procure_batch.domain
    and the kernel; the item handler (normally
    ``InventoryService.record_stock_movement`` on a fresh session) is
    injected so this package never imports the modules layer.

Invariants enforced:
    - Each item runs on its own session in its own unit of work; one
      item's failure never aborts its siblings.
    - At most ``max_workers`` items run at once; chunks run one after the
      other, so a cancel lets the in-flight chunk finish and record.
    - Every failure carries the item index, the item, the error code and a
      readable message.
    - Chunk size halves (down to ``min_chunk_size``) after a chunk whose
      p95 crossed ``warning_p95_ms`` and grows back toward ``chunk_size``
      otherwise.
"""

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from procure_batch.config import BatchConfig
from procure_batch.domain.types import (
    BatchFailure,
    BatchItemStatus,
    BatchResult,
    PerformanceReport,
    StockUpdate,
)
from procure_batch.services.cache import LookupCache
from procure_batch.services.metrics import PerformanceMonitor, p95
from procure_kernel.domain.values import ActorRef
from procure_kernel.exceptions import ProcureError, ValidationFailedError
from procure_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")

ItemHandler = Callable[[Session, StockUpdate, ActorRef], Any]


class BatchProcessor:
    """
    Non-goals:
        - Does NOT persist batch runs; the result object is the record.
        - Does NOT retry items itself; the handler's unit of work does.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handler: ItemHandler,
        config: BatchConfig | None = None,
        monitor: PerformanceMonitor | None = None,
        cache: LookupCache | None = None,
    ):
        self._session_factory = session_factory
        self._handler = handler
        self._config = config or BatchConfig.with_defaults()
        self._monitor = monitor or PerformanceMonitor(self._config)
        self._cache = cache
        self._cancelled = threading.Event()

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor

    def cancel(self) -> None:
        """Stop scheduling new chunks; in-flight items still finish."""
        self._cancelled.set()
        logger.warning("batch_cancel_requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def performance_report(self) -> PerformanceReport:
        return self._monitor.analyze(self._cache)

    def _run_item(
        self,
        batch_id: UUID,
        index: int,
        item: StockUpdate,
        actor: ActorRef,
    ) -> tuple[BatchFailure | None, float]:
        started = time.perf_counter()
        session = self._session_factory()
        failure: BatchFailure | None = None
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor.actor_id)):
            try:
                self._handler(session, item, actor)
            except ValidationFailedError as exc:
                failure = BatchFailure(index, item, exc.kind, exc.readable_kind)
            except ProcureError as exc:
                logger.warning(
                    "batch_item_failed",
                    extra={"index": index, "error_code": exc.code, "error_type": type(exc).__name__},
                )
                failure = BatchFailure(index, item, exc.code.lower(), str(exc))
            except Exception as exc:
                logger.exception(
                    "batch_item_crashed",
                    extra={"index": index, "error_type": type(exc).__name__},
                )
                failure = BatchFailure(index, item, "unexpected_error", str(exc))
            finally:
                session.close()
                duration_ms = (time.perf_counter() - started) * 1000
                self._monitor.record("batch_item", duration_ms)
            logger.debug(
                "batch_item_finished",
                extra={
                    "index": index,
                    "item_status": (
                        BatchItemStatus.FAILED if failure else BatchItemStatus.SUCCEEDED
                    ).value,
                    "duration_ms": round(duration_ms, 3),
                },
            )
        return failure, duration_ms

    def _next_chunk_size(self, current: int, durations: list[float]) -> int:
        if not self._config.adaptive_chunking:
            return current
        if p95(durations) > self._config.warning_p95_ms:
            reduced = max(self._config.min_chunk_size, current // 2)
            if reduced != current:
                logger.warning(
                    "batch_chunk_size_reduced",
                    extra={"previous_chunk_size": current, "chunk_size": reduced},
                )
            return reduced
        return min(self._config.chunk_size, current * 2)

    def run(self, updates: Sequence[StockUpdate], actor: ActorRef) -> BatchResult:
        """
        Apply ``updates`` chunk by chunk.

        Returns:
            BatchResult with ``processed`` successes, one BatchFailure per
            failed item (in index order), and ``skipped`` items never
            scheduled because of ``cancel()``.
        """
        self._cancelled.clear()
        batch_id = uuid4()
        started = time.perf_counter()
        total = len(updates)
        processed = 0
        failures: list[BatchFailure] = []
        chunk_sizes: list[int] = []
        chunk_size = self._config.chunk_size
        position = 0

        with LogContext.bind(batch_id=str(batch_id)):
            logger.info(
                "batch_started",
                extra={
                    "total_items": total,
                    "chunk_size": chunk_size,
                    "max_workers": self._config.max_workers,
                },
            )
            with ThreadPoolExecutor(
                max_workers=self._config.max_workers,
                thread_name_prefix="procure-batch",
            ) as pool:
                while position < total and not self._cancelled.is_set():
                    chunk = updates[position:position + chunk_size]
                    with self._monitor.measure("batch_chunk"):
                        futures = [
                            pool.submit(self._run_item, batch_id, position + offset, item, actor)
                            for offset, item in enumerate(chunk)
                        ]
                        outcomes = [future.result() for future in futures]

                    durations = []
                    for failure, duration_ms in outcomes:
                        durations.append(duration_ms)
                        if failure is None:
                            processed += 1
                        else:
                            failures.append(failure)
                    chunk_sizes.append(len(chunk))
                    position += len(chunk)
                    chunk_size = self._next_chunk_size(chunk_size, durations)

            cancelled = self._cancelled.is_set() and position < total
            result = BatchResult(
                batch_id=batch_id,
                total=total,
                processed=processed,
                failed=tuple(sorted(failures, key=lambda f: f.index)),
                cancelled=cancelled,
                skipped=total - position,
                duration_ms=(time.perf_counter() - started) * 1000,
                chunk_sizes=tuple(chunk_sizes),
            )
            log = logger.warning if result.failed or cancelled else logger.info
            log(
                "batch_completed",
                extra={
                    "total_items": total,
                    "processed": processed,
                    "failed_count": len(failures),
                    "skipped": result.skipped,
                    "cancelled": cancelled,
                    "duration_ms": round(result.duration_ms, 3),
                },
            )
        return result
