"""
procure_batch -- chunked, concurrent stock updates.

Applies many stock movements with a fixed worker pool, one unit of work
per item, per-operation timing, and a bounded lookup cache.

Architecture: sits beside procure_modules.  Depends on procure_kernel; the
per-item handler is injected by the inventory facade.
"""

from procure_batch.config import BatchConfig
from procure_batch.domain.types import BatchFailure, BatchResult, StockUpdate
from procure_batch.services.executor import BatchProcessor

__all__ = [
    "BatchConfig",
    "BatchFailure",
    "BatchProcessor",
    "BatchResult",
    "StockUpdate",
]
