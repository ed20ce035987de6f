"""
Inventory Domain Models.

Catalog views returned by the InventoryService facade.  Stock quantities
are deliberately absent: they change with every movement and are read
from the ledger, never from a cached view.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from procure_kernel.logging_config import get_logger
from procure_kernel.models.product import Product

logger = get_logger("modules.inventory.models")


@dataclass(frozen=True)
class ProductInfo:
    """A catalog product."""
    id: UUID
    sku: str
    name: str
    unit_cost: Decimal
    is_active: bool

    @classmethod
    def from_model(cls, product: Product) -> "ProductInfo":
        return cls(
            id=product.id,
            sku=product.sku,
            name=product.name,
            unit_cost=product.unit_cost,
            is_active=product.is_active,
        )
