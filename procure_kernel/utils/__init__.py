"""Utility modules for the procurement kernel."""

from procure_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_payload,
)

__all__ = [
    "hash_payload",
    "hash_audit_event",
    "canonicalize_json",
]
