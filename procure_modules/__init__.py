"""
Procure Modules.

Thin orchestration layers over the procurement kernel.  Each module contains:
- Domain models (frozen DTOs returned by the facade)
- Workflows (the purchase-order state machine)
- Configuration schemas (policy and settings)
- A service facade that owns the transaction boundary

Modules:
- Purchasing: purchase orders, approvals, receiving, suppliers, audit queries
- Inventory: products, stock movements, history, batches, integrity checks
"""

from procure_modules import inventory, purchasing

__all__ = ["inventory", "purchasing"]
