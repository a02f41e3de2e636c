"""
sweets.services.refund_service — Daily Bot Refund Job
======================================================

Reverses bot spends whose actions were disqualified after the fact.

How it works:
    1. Select ``bot_refunds`` rows that are ``pending`` and due at or before
       *now*, oldest first.
    2. Claim each one with ``UPDATE … SET status = 'processing' WHERE
       status = 'pending'``.  A row another run already claimed is skipped.
    3. In one database transaction: flip the action's ``was_refunded`` flag
       (compare-and-set), debit the bot wallet, credit the treasury (key
       ``refund:<id>``), bump ``total_refunded`` and mark the row
       ``processed``.
    4. A failed candidate is marked ``failed`` with the error text and left
       for manual inspection; it is never retried automatically.  A store
       outage instead puts the candidate back to ``pending`` for the next
       run.
    5. After the batch, reset the treasury daily spend counter.

One bad candidate never aborts the batch.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime

from sqlalchemy import Engine, select, update

from sweets.constants import refund_key
from sweets.database.engine import get_session
from sweets.database.models import BotRefund, OwnerKind, RefundStatus, TransactionType
from sweets.engine.entries import two_leg
from sweets.engine.schedule import utcnow
from sweets.errors import StoreUnavailable, WalletNotFound
from sweets.services import ledger_service, treasury_service
from sweets.services.bot_action_service import mark_refunded

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 1000


def due_refund_ids(engine: Engine, now: datetime) -> list[str]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(BotRefund.id)
            .where(
                BotRefund.status == RefundStatus.PENDING.value,
                BotRefund.scheduled_for <= now,
            )
            .order_by(BotRefund.scheduled_for, BotRefund.created_at)
        ).all())


def _claim(engine: Engine, refund_id: str) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(BotRefund)
            .where(
                BotRefund.id == refund_id,
                BotRefund.status == RefundStatus.PENDING.value,
            )
            .values(status=RefundStatus.PROCESSING.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _release(engine: Engine, refund_id: str) -> None:
    """Return a claimed candidate to ``pending`` after a store outage."""
    try:
        with get_session(engine) as session:
            session.execute(
                update(BotRefund)
                .where(
                    BotRefund.id == refund_id,
                    BotRefund.status == RefundStatus.PROCESSING.value,
                )
                .values(status=RefundStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
    except StoreUnavailable:
        logger.error("Refund %s left in processing; store still unavailable", refund_id)


def _mark_failed(engine: Engine, refund_id: str, error: str, now: datetime) -> None:
    try:
        with get_session(engine) as session:
            session.execute(
                update(BotRefund)
                .where(
                    BotRefund.id == refund_id,
                    BotRefund.status == RefundStatus.PROCESSING.value,
                )
                .values(
                    status=RefundStatus.FAILED.value,
                    error=error[:_MAX_ERROR_LENGTH],
                    processed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
    except StoreUnavailable:
        logger.error("Could not mark refund %s failed: %s", refund_id, error)


def _apply_refund(engine: Engine, refund_id: str, now: datetime) -> int:
    """Compensate one claimed candidate.  Returns the refunded amount."""
    with get_session(engine) as session:
        refund = session.get(BotRefund, refund_id)
        mark_refunded(session, refund.bot_action_id, now=now)

        bot_wallet = ledger_service.get_wallet(session, OwnerKind.BOT, refund.bot_id)
        if bot_wallet is None:
            raise WalletNotFound(f"No wallet for bot:{refund.bot_id}")
        state = treasury_service.get_state(session, lock=True)

        result = ledger_service.apply_transaction(
            session,
            TransactionType.REFUND,
            refund_key(refund.id),
            two_leg(bot_wallet.id, state.wallet_id, refund.refund_amount, memo=refund.reason),
            {
                "bot_action_id": refund.bot_action_id,
                "bot_id": refund.bot_id,
                "original_amount": refund.original_amount,
                "reason": refund.reason,
            },
        )
        if not result.duplicate:
            state.total_refunded += refund.refund_amount

        refund.status = RefundStatus.PROCESSED.value
        refund.processed_at = now
        refund.transaction_id = result.transaction_id
        refund.error = None
        return refund.refund_amount


def run_refunds(
    engine: Engine,
    now: datetime | None = None,
    *,
    inter_item_delay: float = 0.0,
    max_run_seconds: float | None = None,
    reset_daily: bool = True,
) -> dict:
    """Process every refund candidate due at or before *now*.

    Returns ``{"candidates", "processed", "failed", "skipped", "deferred",
    "refunded_amount", "daily_reset", "timed_out", "timestamp"}``.
    """
    now = now or utcnow()
    summary = {
        "candidates": 0,
        "processed": 0,
        "failed": 0,
        "skipped": 0,
        "deferred": 0,
        "refunded_amount": 0,
        "daily_reset": False,
        "timed_out": False,
    }

    ids = due_refund_ids(engine, now)
    summary["candidates"] = len(ids)
    started = time.monotonic()

    for index, refund_id in enumerate(ids):
        if max_run_seconds is not None and time.monotonic() - started > max_run_seconds:
            summary["timed_out"] = True
            summary["deferred"] += len(ids) - index
            logger.warning(
                "Refund run hit its %ss limit; %d candidates left for the next run",
                max_run_seconds, len(ids) - index,
            )
            break
        if index and inter_item_delay:
            time.sleep(inter_item_delay)

        try:
            claimed = _claim(engine, refund_id)
        except StoreUnavailable:
            logger.warning("Refund %s deferred: store unavailable", refund_id)
            summary["deferred"] += 1
            continue
        if not claimed:
            summary["skipped"] += 1
            continue

        try:
            amount = _apply_refund(engine, refund_id, now)
        except StoreUnavailable:
            logger.warning("Refund %s deferred: store unavailable", refund_id)
            _release(engine, refund_id)
            summary["deferred"] += 1
        except Exception as exc:
            logger.exception("Refund %s failed", refund_id)
            _mark_failed(engine, refund_id, str(exc), now)
            summary["failed"] += 1
        else:
            summary["processed"] += 1
            summary["refunded_amount"] += amount

    if reset_daily:
        try:
            summary["daily_reset"] = treasury_service.reset_daily_spend(engine, now.date())
        except StoreUnavailable:
            logger.exception("Daily spend reset after refunds failed")

    logger.info(
        "Refund run: %d candidates, %d processed (%d coins), %d failed, %d skipped, %d deferred",
        summary["candidates"], summary["processed"], summary["refunded_amount"],
        summary["failed"], summary["skipped"], summary["deferred"],
    )
    summary["timestamp"] = now.isoformat()
    return summary
