"""
sweets.worker.__main__ — Entry point for ``python -m sweets.worker``
====================================================================

Wiring:
1. Load .env (secrets, DATABASE_URL).
2. Load config.yaml (schedule hours, batch pacing).
3. Create the SQLAlchemy engine, ensure tables, seed settings and the
   system wallets (funding the treasury on first start).
4. Build and warm the ConfigCache.
5. Pick the expiry notifier (outbox table or webhook).
6. Start the periodic job loops and block until SIGINT/SIGTERM.

Run with::

    python -m sweets.worker
"""

from __future__ import annotations

import asyncio
import logging
import signal

from dotenv import load_dotenv

from sweets.config import load_config
from sweets.database.engine import create_db_engine, init_db
from sweets.engine.cache import ConfigCache
from sweets.services.log_buffer import install_handler
from sweets.services.notification_service import build_notifier
from sweets.worker.tasks import PeriodicTasks

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("sweets")


async def _run(tasks: PeriodicTasks) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await tasks.start()
    try:
        await stop.wait()
    finally:
        await tasks.stop()


def main() -> None:
    """Bootstrap and run the Sweets worker."""

    # 1. Environment variables (secrets).
    load_dotenv()
    install_handler()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Economy: %s", cfg.economy_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(
        engine,
        initial_treasury_balance=cfg.treasury_initial_balance,
        daily_spend_limit=cfg.treasury_daily_spend_limit,
    )

    # 4. Build and warm the ConfigCache.
    cache = ConfigCache(engine)
    cache.load_all()

    # 5. Expiry notices.
    notifier = build_notifier(cfg, engine)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    tasks = PeriodicTasks(engine, cfg, cache, notifier)
    try:
        asyncio.run(_run(tasks))
    except KeyboardInterrupt:
        pass
    logger.info("Sweets worker stopped")


if __name__ == "__main__":
    main()
