"""
sweets.database.engine — Database Connection & Async Helper
============================================================

SQLAlchemy + psycopg2 is **synchronous**.  Request handlers call the
services directly; the worker's asyncio loops ship every job body to a
thread with :func:`run_db` so one slow batch never blocks the others.

:func:`get_session` is the single transaction boundary used by every
service: it commits on success, rolls back on any exception, and turns
connection-level failures into :class:`~sweets.errors.StoreUnavailable`
so callers (and the batch jobs in particular) can tell a transient outage
from a declined financial action.

Usage::

    from sweets.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + seed

    # Inside a worker coroutine:
    summary = await run_db(run_refunds, engine)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from sweets.database.models import Base
from sweets.errors import StoreUnavailable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine() -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the ``DATABASE_URL`` env var.

    Pool sizing:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,        # Set True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,      # Fail after 10s instead of hanging forever
        pool_recycle=3600,    # Recycle connections after 1 hour
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(
    engine: Engine,
    *,
    initial_treasury_balance: int = 0,
    daily_spend_limit: int = 500,
) -> None:
    """Create all tables, seed default settings and the system wallets.

    Safe to call on every startup.  The treasury is funded with
    *initial_treasury_balance* exactly once (the genesis refill is keyed).

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained as a safety net for dev/test
        environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from sweets.database.seed import seed_default_settings, seed_system_wallets

    seed_default_settings(engine)
    seed_system_wallets(
        engine,
        initial_treasury_balance=initial_treasury_balance,
        daily_spend_limit=daily_spend_limit,
    )


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Connection failures, pool timeouts and driver interface errors are
    re-raised as :class:`StoreUnavailable`.

    Usage::

        with get_session(engine) as session:
            session.add(Wallet(owner_kind="user", owner_id="42"))
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        session.rollback()
        logger.error("Database unavailable: %s", exc)
        raise StoreUnavailable(str(exc)) from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made from a coroutine goes through this wrapper::

        result = await run_db(my_sync_db_function, engine, bot_id)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
