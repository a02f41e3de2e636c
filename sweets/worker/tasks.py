"""
sweets.worker.tasks — Periodic Background Jobs
===============================================

One asyncio loop per batch job:

- **Daily spend reset** — at ``daily_reset_hour_utc``; zeroes the treasury
  daily counter (no-op if already reset today).
- **Bot refunds** — at ``refund_hour_utc``; compensates disqualified bot
  spends, then resets the daily counter.
- **Coin expiration** — at ``expiration_hour_utc``; debits dormant balances
  and sends expiry notices.
- **Treasury snapshot** — at ``snapshot_hour_utc``.
- **Wallet reconciliation** — every ``reconciliation_interval_hours``.

Job bodies are plain synchronous functions run through ``run_db()``.  Each
job has its own lock, so a run that is still going when the next trigger
fires makes that trigger a no-op rather than a second concurrent run.
A failing run is logged and the loop carries on to its next due time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from sweets.database.engine import run_db
from sweets.engine.schedule import next_daily_run, seconds_until, utcnow
from sweets.services.expiration_service import run_expirations
from sweets.services.reconciliation_service import reconcile_wallets
from sweets.services.refund_service import run_refunds
from sweets.services.snapshot_service import take_treasury_snapshot
from sweets.services.treasury_service import reset_daily_spend

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from sweets.config import SweetsConfig
    from sweets.engine.cache import ConfigCache
    from sweets.services.notification_service import Notifier

logger = logging.getLogger(__name__)

JOB_NAMES = ("daily-reset", "refunds", "expirations", "snapshot", "reconciliation")


def build_jobs(
    engine: Engine,
    cfg: SweetsConfig,
    cache: ConfigCache,
    notifier: Notifier | None = None,
) -> dict[str, Callable[[], object]]:
    """Map job name → zero-argument callable running that job once."""

    def daily_reset() -> dict:
        return {"reset": reset_daily_spend(engine)}

    def refunds() -> dict:
        return run_refunds(
            engine,
            inter_item_delay=cfg.batch_item_delay_seconds,
            max_run_seconds=cfg.job_max_run_seconds,
            reset_daily=cache.get_bool("jobs.reset_daily_after_refunds", True),
        )

    def expirations() -> dict:
        return run_expirations(
            engine,
            notifier=notifier,
            inter_item_delay=cfg.batch_item_delay_seconds,
            max_run_seconds=cfg.job_max_run_seconds,
            notification_timeout=cfg.notification_timeout_seconds,
        )

    def snapshot() -> dict:
        return take_treasury_snapshot(engine)

    def reconciliation() -> dict:
        return reconcile_wallets(
            engine, fix_drift=cache.get_bool("jobs.reconcile_fix_drift", False),
        )

    return {
        "daily-reset": daily_reset,
        "refunds": refunds,
        "expirations": expirations,
        "snapshot": snapshot,
        "reconciliation": reconciliation,
    }


class PeriodicTasks:
    """Owns the job loops of the worker process."""

    def __init__(
        self,
        engine: Engine,
        cfg: SweetsConfig,
        cache: ConfigCache,
        notifier: Notifier | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._cfg = cfg
        self._cache = cache
        self._clock = clock
        self._jobs = build_jobs(engine, cfg, cache, notifier)
        self._locks = {name: asyncio.Lock() for name in self._jobs}
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start every job loop."""
        daily = {
            "daily-reset": self._cfg.daily_reset_hour_utc,
            "refunds": self._cfg.refund_hour_utc,
            "expirations": self._cfg.expiration_hour_utc,
            "snapshot": self._cfg.snapshot_hour_utc,
        }
        for name, hour in daily.items():
            self._tasks.append(asyncio.create_task(self._daily_loop(name, hour), name=name))
            logger.info("Job %s scheduled daily at %02d:00 UTC", name, hour)

        hours = self._cfg.reconciliation_interval_hours
        self._tasks.append(asyncio.create_task(
            self._interval_loop("reconciliation", hours * 3600), name="reconciliation",
        ))
        logger.info("Job reconciliation scheduled every %d hours", hours)

    async def stop(self) -> None:
        """Cancel all loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # -------------------------------------------------------------------
    # Running a job
    # -------------------------------------------------------------------
    async def run_job(self, name: str) -> object | None:
        """Run *name* once.  Returns its summary, or ``None`` if skipped/failed."""
        lock = self._locks[name]
        if lock.locked():
            logger.warning("Job %s is still running; skipping this trigger", name)
            return None

        async with lock:
            await run_db(self._cache.refresh)
            try:
                result = await run_db(self._jobs[name])
            except Exception:
                logger.exception("Job %s failed", name, extra={"task": name})
                return None
            logger.info("Job %s complete: %s", name, result)
            return result

    # -------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------
    async def _daily_loop(self, name: str, hour: int) -> None:
        while True:
            due = next_daily_run(hour, self._clock())
            await asyncio.sleep(seconds_until(due, self._clock()))
            await self.run_job(name)

    async def _interval_loop(self, name: str, seconds: float) -> None:
        while True:
            await asyncio.sleep(seconds)
            await self.run_job(name)
