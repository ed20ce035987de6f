"""Database layer - engine, base classes, and immutability listeners."""

from procure_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from procure_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
