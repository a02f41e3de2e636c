"""Alembic environment for the sweets ledger schema.

The connection URL always comes from ``DATABASE_URL`` (``.env`` is loaded
first), the same variable :func:`sweets.database.engine.create_db_engine`
reads, so migrations and the running services can never point at
different databases.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import create_engine, pool

from alembic import context
from sweets.database.models import Base

load_dotenv()

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)
else:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _database_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot run ledger migrations.")
    return url


def _configure_kwargs() -> dict:
    # Amount columns are BigInteger; detect type changes on autogenerate.
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a single short-lived connection."""
    connectable = create_engine(_database_url(), poolclass=pool.NullPool)
    logger.info("Migrating ledger schema on %s", connectable.url.host)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs())
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
