"""Pure batch types."""

from procure_batch.domain.types import (
    BatchFailure,
    BatchItemStatus,
    BatchResult,
    OperationStats,
    PerformanceReport,
    PerformanceStatus,
    StockUpdate,
)

__all__ = [
    "BatchFailure",
    "BatchItemStatus",
    "BatchResult",
    "OperationStats",
    "PerformanceReport",
    "PerformanceStatus",
    "StockUpdate",
]
