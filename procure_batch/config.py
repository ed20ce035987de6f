"""
Batch Configuration Schema.

Chunking, worker pool, cache and performance thresholds for
``BatchProcessor``.  Values are loaded from YAML by ``procure_config``.
"""

from dataclasses import dataclass
from typing import Self

from procure_kernel.logging_config import get_logger

logger = get_logger("batch.config")


@dataclass
class BatchConfig:
    """
    Configuration schema for batch stock updates.

        config = BatchConfig(chunk_size=50, max_workers=8)
    """

    # Scheduling
    chunk_size: int = 100
    min_chunk_size: int = 10
    max_workers: int = 4
    adaptive_chunking: bool = True

    # Lookup cache
    cache_capacity: int = 500
    cache_ttl_seconds: float = 300.0
    cache_warning_occupancy: float = 0.9

    # Performance thresholds (milliseconds)
    critical_duration_ms: float = 2000.0
    warning_p95_ms: float = 1000.0
    metrics_window: int = 1000

    def __post_init__(self):
        if self.chunk_size < 1 or self.min_chunk_size < 1:
            raise ValueError("chunk sizes must be >= 1")
        if self.min_chunk_size > self.chunk_size:
            raise ValueError("min_chunk_size must not exceed chunk_size")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.cache_capacity < 1:
            raise ValueError("cache_capacity must be >= 1")
        if not 0 < self.cache_warning_occupancy <= 1:
            raise ValueError("cache_warning_occupancy must be in (0, 1]")
        logger.info(
            "batch_config_initialized",
            extra={
                "chunk_size": self.chunk_size,
                "max_workers": self.max_workers,
                "cache_capacity": self.cache_capacity,
                "critical_duration_ms": self.critical_duration_ms,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        logger.info("batch_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        logger.info(
            "batch_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)
