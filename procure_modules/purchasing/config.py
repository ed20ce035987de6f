"""
Purchasing Configuration Schema.

Defines the structure and defaults for purchasing settings: the approval
chain, receiving tolerances and numbering.  Values are loaded from YAML by
``procure_config`` at runtime.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Self

from procure_kernel.logging_config import get_logger

logger = get_logger("modules.purchasing.config")


@dataclass
class ApprovalLevel:
    """One step of the approval chain. ``max_amount=None`` means unlimited."""
    level: int
    approver_role: str
    max_amount: Decimal | None = None

    def covers(self, amount: Decimal) -> bool:
        return self.max_amount is None or amount <= self.max_amount

    def snapshot(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "approver_role": self.approver_role,
            "max_amount": None if self.max_amount is None else str(self.max_amount),
        }


def _default_chain() -> tuple[ApprovalLevel, ...]:
    return (
        ApprovalLevel(level=1, approver_role="manager", max_amount=Decimal("10000")),
        ApprovalLevel(level=2, approver_role="admin", max_amount=Decimal("50000")),
        ApprovalLevel(level=3, approver_role="admin", max_amount=None),
    )


@dataclass
class PurchasingConfig:
    """
    Configuration schema for the purchasing module.

    Override at instantiation with company-specific values:

        config = PurchasingConfig(
            require_receiving_approval=True,
            price_tolerance_percent=Decimal("2"),
        )
    """

    # Approval routing
    approval_levels: tuple[ApprovalLevel, ...] = field(default_factory=_default_chain)

    # Orders
    order_number_prefix: str = "PO-"
    order_number_start: int = 1000
    default_currency: str = "PHP"
    allow_over_receiving_default: bool = False

    # Receiving
    receiving_number_prefix: str = "RCV-"
    require_receiving_approval: bool = False
    price_tolerance_percent: Decimal = Decimal("5.0")
    under_receiving_tolerance_percent: Decimal = Decimal("10.0")

    def __post_init__(self):
        levels = [lvl.level for lvl in self.approval_levels]
        if not levels or levels != list(range(1, len(levels) + 1)):
            raise ValueError(f"approval levels must be numbered 1..n, got {levels}")
        logger.info(
            "purchasing_config_initialized",
            extra={
                "approval_levels_count": len(self.approval_levels),
                "require_receiving_approval": self.require_receiving_approval,
                "allow_over_receiving_default": self.allow_over_receiving_default,
                "price_tolerance_percent": str(self.price_tolerance_percent),
                "under_receiving_tolerance_percent": str(self.under_receiving_tolerance_percent),
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the standard three-level chain."""
        logger.info("purchasing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from a dictionary (e.g. a YAML section)."""
        logger.info(
            "purchasing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        data = dict(data)
        if "approval_levels" in data:
            data["approval_levels"] = tuple(
                ApprovalLevel(
                    level=int(level["level"]),
                    approver_role=level["approver_role"],
                    max_amount=(
                        None if level.get("max_amount") is None
                        else Decimal(str(level["max_amount"]))
                    ),
                ) if isinstance(level, dict) else level
                for level in data["approval_levels"]
            )
        for key in ("price_tolerance_percent", "under_receiving_tolerance_percent"):
            if key in data:
                data[key] = Decimal(str(data[key]))
        return cls(**data)

    def level(self, number: int) -> ApprovalLevel | None:
        for lvl in self.approval_levels:
            if lvl.level == number:
                return lvl
        return None

    @property
    def last_level(self) -> int:
        return len(self.approval_levels)

    def final_level_for(self, amount: Decimal) -> int:
        """First level whose max_amount covers ``amount``; the last level when none does."""
        for lvl in self.approval_levels:
            if lvl.covers(amount):
                return lvl.level
        return self.last_level

    def chain_snapshot(self) -> list[dict[str, Any]]:
        return [lvl.snapshot() for lvl in self.approval_levels]
