"""
Module ORM Registry (``procure_modules._orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy model, kernel and module alike, is imported so that
``Base.metadata`` holds the complete schema before tables are created, and
so that module immutability rules are added before listeners attach.

Architecture position
---------------------
**Modules layer** -- utility.  Imports from sibling ``procure_modules``
packages and from ``procure_kernel`` (allowed: modules -> kernel).
MUST NOT be imported at module level by ``procure_kernel``.

Usage
-----
Entrypoints and ``tests/conftest.py`` call ``create_all_tables()``.
"""

from sqlalchemy.engine import Engine


def import_all_orm_models() -> None:
    """Import kernel models and every ``procure_modules.*.orm`` module (idempotent)."""
    import procure_kernel.models  # noqa: F401
    import procure_kernel.services.sequence_service  # noqa: F401  # sequence_counters
    import procure_modules.purchasing.orm  # noqa: F401


def create_all_tables(engine: Engine | None = None, install_listeners: bool = True) -> None:
    """
    Create kernel + module tables, then optionally attach the ORM
    immutability listeners.

    Preconditions:
        ``engine`` is given, or the process-wide engine is initialized.
    """
    from procure_kernel.db.engine import create_tables
    from procure_kernel.db.immutability import register_immutability_listeners

    import_all_orm_models()
    create_tables(engine)
    if install_listeners:
        register_immutability_listeners()
