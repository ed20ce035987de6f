"""
Inventory Configuration Schema.

Defines the structure and defaults for stock ledger settings.  Values are
loaded from YAML by ``procure_config`` at runtime.
"""

from dataclasses import dataclass, field
from typing import Self

from procure_kernel.domain.values import MovementType
from procure_kernel.logging_config import get_logger

logger = get_logger("modules.inventory.config")


VALID_AUDIT_WRITE_MODES = {"joint", "at_least_once"}


@dataclass
class InventoryConfig:
    """
    Configuration schema for the inventory module.

    Override at instantiation with company-specific values:

        config = InventoryConfig(
            negative_stock_movement_types=frozenset({MovementType.RECOUNT}),
            audit_write_mode="at_least_once",
        )
    """

    # Movement types allowed to take stock below zero
    negative_stock_movement_types: frozenset[MovementType] = field(default_factory=frozenset)

    # "joint": audit entry shares the stock write's transaction
    # "at_least_once": stock commits even if its audit entry fails
    audit_write_mode: str = "joint"

    # Seconds to wait for a product lock before giving up (transient)
    lock_timeout_seconds: float = 30.0

    # Default page size for stock history
    history_page_size: int = 100

    def __post_init__(self):
        if self.audit_write_mode not in VALID_AUDIT_WRITE_MODES:
            raise ValueError(
                f"audit_write_mode must be one of {VALID_AUDIT_WRITE_MODES}, "
                f"got '{self.audit_write_mode}'"
            )
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.history_page_size < 1:
            raise ValueError("history_page_size must be >= 1")
        self.negative_stock_movement_types = frozenset(
            MovementType(t) for t in self.negative_stock_movement_types
        )
        logger.info(
            "inventory_config_initialized",
            extra={
                "audit_write_mode": self.audit_write_mode,
                "negative_stock_movement_types": sorted(
                    t.value for t in self.negative_stock_movement_types
                ),
                "lock_timeout_seconds": self.lock_timeout_seconds,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with no negative-stock exceptions and joint audit writes."""
        logger.info("inventory_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g. a YAML section)."""
        logger.info(
            "inventory_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        data = dict(data)
        if "negative_stock_movement_types" in data:
            data["negative_stock_movement_types"] = frozenset(
                MovementType(t) for t in data["negative_stock_movement_types"] or ()
            )
        return cls(**data)
