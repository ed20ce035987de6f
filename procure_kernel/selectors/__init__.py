"""Read-only query selectors."""

from procure_kernel.selectors.base import BaseSelector
from procure_kernel.selectors.stock_selector import (
    StockHistoryPage,
    StockSelector,
    StockSummary,
)

__all__ = [
    "BaseSelector",
    "StockHistoryPage",
    "StockSelector",
    "StockSummary",
]
