"""
Module: procure_kernel.models.product
Responsibility: ORM persistence for products (with the authoritative stock
    counter) and suppliers.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - stock_quantity is written only by StockLedgerService through a
      compare-and-set UPDATE on ``version``; ORM writes are refused
      (db/immutability.py).
    - version increases by exactly one per stock movement, so it doubles as
      the product's ledger sequence.
    - sku and supplier code are unique.
"""

from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from procure_kernel.db.base import TrackedBase


class Product(TrackedBase):
    """A stocked item. Deactivated products reject new orders and movements."""

    __tablename__ = "products"

    __table_args__ = (
        Index("idx_product_active", "is_active"),
    )

    sku: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    stock_quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Product {self.sku} stock={self.stock_quantity}>"


class Supplier(TrackedBase):
    """A vendor purchase orders are placed with."""

    __tablename__ = "suppliers"

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    contact_email: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def __repr__(self) -> str:
        return f"<Supplier {self.code}>"
