"""
procure_batch.domain.types -- Pure frozen dataclasses for batch stock updates.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class BatchItemStatus(str, Enum):
    """Per-item outcome within a batch."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not scheduled because the batch was cancelled


class PerformanceStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class StockUpdate:
    """One requested stock movement in a batch."""

    product_id: UUID
    quantity: Decimal | int | str
    movement_type: str = "adjustment"
    reference_id: UUID | None = None
    reference_type: str | None = None
    unit_cost: Decimal | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BatchFailure:
    """
    A failed item: its position, the item itself, the machine-readable code
    and a readable message (``invalid quantity``).
    """

    index: int
    item: Any
    error_code: str
    error: str


@dataclass(frozen=True)
class BatchResult:
    """Immutable result of one batch run."""

    batch_id: UUID
    total: int
    processed: int
    failed: tuple[BatchFailure, ...] = ()
    cancelled: bool = False
    skipped: int = 0
    duration_ms: float = 0.0
    chunk_sizes: tuple[int, ...] = ()

    @property
    def failed_count(self) -> int:
        return len(self.failed)


@dataclass(frozen=True)
class OperationStats:
    """Duration statistics for one named operation, in milliseconds."""

    operation: str
    count: int
    average_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float


@dataclass(frozen=True)
class PerformanceReport:
    status: PerformanceStatus
    operations: dict[str, OperationStats] = field(default_factory=dict)
    cache_occupancy: float = 0.0
    cache_hit_rate: float = 0.0
    recommendations: tuple[str, ...] = ()
