"""
Procure Kernel

The purchase-order lifecycle and stock ledger kernel:
- Append-only stock ledger with a compare-and-set stock counter
- Hash-chained audit trail for every mutation
- Validation gate with persisted error records
- Retry and per-product locking for concurrent writers
"""

__version__ = "0.1.0"
