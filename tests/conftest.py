"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of sweets.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from sweets.config import SweetsConfig  # noqa: E402
from sweets.database.engine import init_db  # noqa: E402
from sweets.database.models import Base  # noqa: E402

TREASURY_START = 10_000
DAILY_LIMIT = 1_000

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Sweets tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the worker).

    pysqlite's own transaction handling breaks SAVEPOINT, which the ledger
    uses for idempotent inserts, so BEGIN is emitted explicitly.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine(db_engine: Engine) -> Engine:
    """``db_engine`` with settings, system wallets and a funded treasury."""
    init_db(db_engine, initial_treasury_balance=TREASURY_START, daily_spend_limit=DAILY_LIMIT)
    return db_engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cfg() -> SweetsConfig:
    return SweetsConfig(
        economy_name="Test Sweets",
        api_port=8000,
        treasury_initial_balance=TREASURY_START,
        treasury_daily_spend_limit=DAILY_LIMIT,
        refund_hour_utc=3,
        expiration_hour_utc=4,
        snapshot_hour_utc=0,
        daily_reset_hour_utc=0,
        reconciliation_interval_hours=168,
        batch_item_delay_seconds=0.0,
        job_max_run_seconds=60.0,
        notification_timeout_seconds=2.0,
    )


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


@pytest.fixture
def service_token():
    return make_service_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from sweets.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_service_token(sub: str = "forum") -> str:
    """Create a backend-caller JWT (``is_service`` claim)."""
    import jwt

    from sweets.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "is_service": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(engine, cfg):
    """FastAPI TestClient wired to the seeded SQLite engine.

    Overrides are keyed on the dependency objects the routers captured, so
    a reload of ``sweets.api.deps`` elsewhere in the session is harmless.
    """
    from fastapi.testclient import TestClient

    from sweets.api.main import app
    from sweets.api.routes import admin, bots, ledger, treasury

    for module in (admin, bots, ledger, treasury):
        app.dependency_overrides[module.get_engine] = lambda: engine
    app.dependency_overrides[admin.get_config] = lambda: cfg

    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
