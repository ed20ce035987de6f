"""
Inventory Module (``procure_modules.inventory``).

Products, the append-only stock ledger seen from the outside, batched
stock updates, and integrity checks.  ``InventoryService`` is the facade.
"""

from procure_modules.inventory.config import InventoryConfig
from procure_modules.inventory.models import ProductInfo
from procure_modules.inventory.service import InventoryService

__all__ = ["InventoryConfig", "InventoryService", "ProductInfo"]
