"""
Pytest fixtures for the procurement test suite.

Provides:
- A session-scoped database (SQLite file by default, PostgreSQL when
  DATABASE_URL points at one)
- Per-test sessions isolated by rollback
- File-backed isolated engines for threaded tests that need real commits
- Facades, actors and a small catalog to drive them

Environment Variables:
- DATABASE_URL: SQLAlchemy URL.  If not set, a SQLite file under the pytest
  temp directory is used.
"""

import json
import logging
import os
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from procure_kernel.db.base import Base
from procure_kernel.db.engine import build_engine, drop_tables, init_engine_from_url, reset_engine
from procure_kernel.db.immutability import unregister_immutability_listeners
from procure_kernel.domain.clock import DeterministicClock
from procure_kernel.domain.values import ActorRef
from procure_kernel.logging_config import LogContext, StructuredFormatter, configure_logging, reset_logging
from procure_kernel.services.lock_registry import ProductLockRegistry
from procure_kernel.services.retry_service import RetryPolicy, RetryService
from procure_modules._orm_registry import create_all_tables
from procure_modules.inventory.service import InventoryService
from procure_modules.purchasing.models import (
    ApprovalDecision,
    LineItemInput,
    OrderStatus,
    PurchaseOrder,
)
from procure_modules.purchasing.service import PurchasingService


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture procure_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, inventory):
            inventory.record_stock_movement(...)
            logs = captured_logs()
            assert any(r["message"] == "stock_movement_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("procure_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


def get_database_url() -> str | None:
    return os.environ.get("DATABASE_URL")


def _is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.startswith("postgresql")


def pytest_collection_modifyitems(config, items):
    if _is_postgres_url(get_database_url()):
        return
    skip = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine(tmp_path_factory) -> Generator[Engine, None, None]:
    """Single engine for the entire test session."""
    url = get_database_url() or f"sqlite:///{tmp_path_factory.mktemp('db') / 'procure.db'}"
    eng = init_engine_from_url(url, pool_size=10, max_overflow=10, pool_timeout=10)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session; immutability listeners stay attached."""
    drop_tables(db_engine)
    create_all_tables(db_engine)
    yield
    unregister_immutability_listeners()
    drop_tables(db_engine)


def _truncate_all_tables(engine: Engine) -> None:
    """Delete every row; used after tests that perform real commits."""
    with engine.connect() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
        conn.commit()


# =============================================================================
# Per-test session with automatic rollback
# =============================================================================


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    Uses the SQLAlchemy 2.0 ``join_transaction_mode`` pattern:
    - Opens a dedicated connection with an outer transaction
    - Creates a session that *joins* the outer transaction
    - ``session.commit()`` inside the test releases a savepoint; it does
      NOT actually commit to the database
    - ``session.rollback()`` returns to the last savepoint
    - At teardown the outer transaction is rolled back
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Threaded-test fixtures (real commits)
# =============================================================================


@pytest.fixture(scope="function")
def isolated_engine(db_tables, db_engine, tmp_path) -> Generator[Engine, None, None]:
    """
    An engine whose sessions commit for real.

    SQLite: a fresh database file per test.  PostgreSQL: the shared engine,
    with every table emptied at teardown.
    """
    if _is_postgres_url(get_database_url()):
        yield db_engine
        _truncate_all_tables(db_engine)
        return

    eng = build_engine(f"sqlite:///{tmp_path / 'isolated.db'}", statement_timeout_ms=30000)
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(isolated_engine) -> sessionmaker[Session]:
    """Each thread should create its own session from this factory."""
    return sessionmaker(bind=isolated_engine, expire_on_commit=False)


# =============================================================================
# Clock, retry, locks
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def fast_retry() -> RetryService:
    """Retries without sleeping."""
    return RetryService(
        RetryPolicy(max_attempts=3, initial_delay_seconds=0.0),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def lock_registry() -> ProductLockRegistry:
    return ProductLockRegistry(default_timeout=10.0)


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def admin_actor() -> ActorRef:
    return ActorRef(actor_id=uuid4(), role="admin")


@pytest.fixture
def manager_actor() -> ActorRef:
    """A manager whose personal approval limit is 10,000."""
    return ActorRef(actor_id=uuid4(), role="manager", approval_limit=Decimal("10000"))


@pytest.fixture
def employee_actor() -> ActorRef:
    return ActorRef(actor_id=uuid4(), role="employee")


@pytest.fixture
def accountant_actor() -> ActorRef:
    return ActorRef(actor_id=uuid4(), role="accountant")


# =============================================================================
# Facades
# =============================================================================


@pytest.fixture
def inventory(session, deterministic_clock, fast_retry, lock_registry) -> InventoryService:
    return InventoryService(
        session,
        clock=deterministic_clock,
        retry=fast_retry,
        locks=lock_registry,
    )


@pytest.fixture
def purchasing(session, deterministic_clock, fast_retry, lock_registry) -> PurchasingService:
    return PurchasingService(
        session,
        clock=deterministic_clock,
        retry=fast_retry,
        locks=lock_registry,
    )


@pytest.fixture
def supplier_id(purchasing, admin_actor) -> UUID:
    return purchasing.register_supplier("SUP-001", "Acme Supplies", admin_actor)


@pytest.fixture
def make_product(inventory, admin_actor) -> Callable[..., UUID]:
    """Register a product and return its id."""
    counter = {"n": 0}

    def _make(
        sku: str | None = None,
        unit_cost: Decimal | str = "10.00",
        initial_stock: Decimal | str | int | None = None,
    ) -> UUID:
        counter["n"] += 1
        info = inventory.register_product(
            sku or f"SKU-{counter['n']:03d}",
            f"Product {counter['n']}",
            unit_cost,
            admin_actor,
            initial_stock=initial_stock,
        )
        return info.id

    return _make


@pytest.fixture
def sent_order(purchasing, supplier_id, admin_actor) -> Callable[..., PurchaseOrder]:
    """
    Create an order, approve it through every required level as admin, and
    send it to the supplier.
    """

    def _make(
        lines: list[tuple[UUID, int | str]],
        unit_cost: str = "10.00",
        order_number: str | None = None,
        allow_over_receiving: bool | None = None,
    ) -> PurchaseOrder:
        order = purchasing.create_order(
            supplier_id,
            [LineItemInput(pid, qty, unit_cost) for pid, qty in lines],
            admin_actor,
            order_number=order_number,
            allow_over_receiving=allow_over_receiving,
        )
        purchasing.transition_status(order.id, OrderStatus.PENDING_APPROVAL, admin_actor)
        final = purchasing.config.final_level_for(order.total_amount)
        for level in range(1, final + 1):
            purchasing.submit_approval_decision(
                order.id, level, ApprovalDecision.APPROVE, admin_actor,
            )
        purchasing.transition_status(order.id, OrderStatus.SENT_TO_SUPPLIER, admin_actor)
        return purchasing.get_order(order.id)

    return _make


@pytest.fixture
def stock_product(make_product) -> Callable[[int | str], UUID]:
    """A product with an opening balance."""

    def _make(quantity: int | str) -> UUID:
        return make_product(initial_stock=quantity)

    return _make


@pytest.fixture
def raw_sql(session) -> Callable[[str, dict | None], None]:
    """Execute raw SQL on the test connection (bypasses ORM listeners)."""

    def _exec(sql: str, params: dict | None = None) -> None:
        session.execute(text(sql), params or {})

    return _exec
