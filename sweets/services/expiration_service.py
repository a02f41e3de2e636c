"""
sweets.services.expiration_service — Daily Coin Expiration Job
===============================================================

Coins granted to users carry an expiry record created by the granting flow
(:func:`schedule_expiration`, default horizon
``economy.expiration_horizon_days``).  Once a day the job debits whatever
is still unspent.

How it works:
    1. Select ``coin_expirations`` rows that are ``pending`` and due at or
       before *now*, oldest first.
    2. In one database transaction per record: claim it (``pending`` →
       ``processed``), lock the user's wallet, debit
       ``min(balance, expired_amount)`` into the burn wallet (key
       ``expiration:<id>``) and stamp ``actual_expired_at``.  The debit can
       never exceed the live balance.
    3. Only after that commit, and only if ``notification_sent`` is false,
       hand a :class:`NotificationRequest` to the notifier and flip the
       flag.  A failed notice is logged and counted; the debit stands.
    4. A record whose processing fails is rolled back to ``pending`` with
       the error text and retried next run (the keyed debit cannot apply
       twice).

Returns ``{"records", "processed", "users_affected", "coins_expired",
"errors", ...}``.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime

from sqlalchemy import Engine, select, update

from sweets.constants import BURN_OWNER_ID, EXPIRATION_REASON, expiration_key
from sweets.database.engine import get_session
from sweets.database.models import (
    CoinExpiration,
    ExpirationStatus,
    OwnerKind,
    TransactionType,
)
from sweets.engine.entries import two_leg
from sweets.engine.schedule import as_utc, expiry_date, utcnow
from sweets.errors import InvalidEntrySet, NotificationFailed, StoreUnavailable
from sweets.services import ledger_service
from sweets.services.notification_service import NotificationRequest, Notifier, dispatch
from sweets.services.settings_service import get_setting_value

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 1000


# ---------------------------------------------------------------------------
# Scheduling (called by the granting flow)
# ---------------------------------------------------------------------------
def schedule_expiration(
    engine: Engine,
    user_id: str,
    amount: int,
    *,
    granted_at: datetime | None = None,
    horizon_days: int | None = None,
    source_transaction_id: str | None = None,
) -> str:
    """Create a pending expiry for *amount* coins granted to *user_id*."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidEntrySet(f"Amount must be a positive integer, got {amount!r}")
    with get_session(engine) as session:
        if horizon_days is None:
            horizon_days = int(get_setting_value(session, "economy.expiration_horizon_days", 90))
        due = expiry_date(granted_at or utcnow(), horizon_days)
        record = CoinExpiration(
            id=str(uuid.uuid4()),
            user_id=str(user_id),
            source_transaction_id=source_transaction_id,
            original_amount=amount,
            expired_amount=amount,
            scheduled_expiry_date=due,
            status=ExpirationStatus.PENDING.value,
            notification_sent=False,
        )
        session.add(record)
        record_id = record.id
    logger.info("Expiry of %d coins for user %s scheduled at %s", amount, user_id, due.isoformat())
    return record_id


def cancel_expiration(engine: Engine, expiration_id: str) -> bool:
    """Cancel a pending expiry.  Returns ``False`` if it was not pending."""
    with get_session(engine) as session:
        result = session.execute(
            update(CoinExpiration)
            .where(
                CoinExpiration.id == expiration_id,
                CoinExpiration.status == ExpirationStatus.PENDING.value,
            )
            .values(status=ExpirationStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        cancelled = result.rowcount == 1
    if cancelled:
        logger.info("Expiration %s cancelled", expiration_id)
    return cancelled


# ---------------------------------------------------------------------------
# Batch job
# ---------------------------------------------------------------------------
def due_expiration_ids(engine: Engine, now: datetime) -> list[str]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(CoinExpiration.id)
            .where(
                CoinExpiration.status == ExpirationStatus.PENDING.value,
                CoinExpiration.scheduled_expiry_date <= now,
            )
            .order_by(CoinExpiration.scheduled_expiry_date, CoinExpiration.created_at)
        ).all())


def _expire_one(engine: Engine, expiration_id: str, now: datetime) -> tuple[str, int, str, bool] | None:
    """Claim and debit one record.

    Returns ``(user_id, amount, expiration_id, needs_notice)`` or ``None``
    if another run already claimed it.
    """
    with get_session(engine) as session:
        claimed = session.execute(
            update(CoinExpiration)
            .where(
                CoinExpiration.id == expiration_id,
                CoinExpiration.status == ExpirationStatus.PENDING.value,
            )
            .values(status=ExpirationStatus.PROCESSED.value, actual_expired_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            return None

        record = session.get(CoinExpiration, expiration_id, populate_existing=True)
        amount = 0
        wallet = ledger_service.get_wallet(session, OwnerKind.USER, record.user_id)
        if wallet is not None:
            burn = ledger_service.system_wallet(session, BURN_OWNER_ID)
            wallet = ledger_service.lock_wallets(session, (wallet.id, burn.id))[wallet.id]
            amount = min(wallet.balance, record.expired_amount)
            if amount > 0:
                result = ledger_service.apply_transaction(
                    session,
                    TransactionType.EXPIRATION,
                    expiration_key(record.id),
                    two_leg(wallet.id, burn.id, amount, memo=EXPIRATION_REASON),
                    {
                        "expiration_id": record.id,
                        "scheduled_amount": record.expired_amount,
                        "scheduled_expiry_date": as_utc(record.scheduled_expiry_date).isoformat(),
                    },
                )
                record.transaction_id = result.transaction_id

        record.processed_amount = amount
        record.error = None
        return record.user_id, amount, record.id, amount > 0 and not record.notification_sent


def _record_error(engine: Engine, expiration_id: str, error: str) -> None:
    try:
        with get_session(engine) as session:
            session.execute(
                update(CoinExpiration)
                .where(CoinExpiration.id == expiration_id)
                .values(error=error[:_MAX_ERROR_LENGTH])
                .execution_options(synchronize_session=False)
            )
    except StoreUnavailable:
        logger.error("Could not record error for expiration %s: %s", expiration_id, error)


def _mark_notified(engine: Engine, expiration_id: str, now: datetime) -> None:
    with get_session(engine) as session:
        session.execute(
            update(CoinExpiration)
            .where(
                CoinExpiration.id == expiration_id,
                CoinExpiration.notification_sent.is_(False),
            )
            .values(notification_sent=True, notification_sent_at=now)
            .execution_options(synchronize_session=False)
        )


def run_expirations(
    engine: Engine,
    now: datetime | None = None,
    *,
    notifier: Notifier | None = None,
    inter_item_delay: float = 0.0,
    max_run_seconds: float | None = None,
    notification_timeout: float = 10.0,
) -> dict:
    """Expire every pending record due at or before *now*."""
    now = now or utcnow()
    summary = {
        "records": 0,
        "processed": 0,
        "users_affected": 0,
        "coins_expired": 0,
        "errors": 0,
        "skipped": 0,
        "deferred": 0,
        "notifications_sent": 0,
        "notifications_failed": 0,
        "timed_out": False,
    }
    users: set[str] = set()

    ids = due_expiration_ids(engine, now)
    summary["records"] = len(ids)
    started = time.monotonic()

    for index, expiration_id in enumerate(ids):
        if max_run_seconds is not None and time.monotonic() - started > max_run_seconds:
            summary["timed_out"] = True
            summary["deferred"] += len(ids) - index
            logger.warning(
                "Expiration run hit its %ss limit; %d records left for the next run",
                max_run_seconds, len(ids) - index,
            )
            break
        if index and inter_item_delay:
            time.sleep(inter_item_delay)

        try:
            outcome = _expire_one(engine, expiration_id, now)
        except StoreUnavailable:
            logger.warning("Expiration %s deferred: store unavailable", expiration_id)
            summary["deferred"] += 1
            continue
        except Exception as exc:
            logger.exception("Expiration %s failed", expiration_id)
            _record_error(engine, expiration_id, str(exc))
            summary["errors"] += 1
            continue

        if outcome is None:
            summary["skipped"] += 1
            continue

        user_id, amount, record_id, needs_notice = outcome
        summary["processed"] += 1
        if amount > 0:
            users.add(user_id)
            summary["coins_expired"] += amount

        if needs_notice and notifier is not None:
            request = NotificationRequest(
                user_id=user_id,
                amount=amount,
                reason=EXPIRATION_REASON,
                effective_date=now,
            )
            try:
                dispatch(notifier, request, timeout=notification_timeout)
                _mark_notified(engine, record_id, now)
            except (NotificationFailed, StoreUnavailable) as exc:
                logger.warning("Expiry notice for user %s not sent: %s", user_id, exc)
                summary["notifications_failed"] += 1
            else:
                summary["notifications_sent"] += 1

    summary["users_affected"] = len(users)
    logger.info(
        "Expiration run: %d records, %d processed, %d users, %d coins expired, %d errors",
        summary["records"], summary["processed"], summary["users_affected"],
        summary["coins_expired"], summary["errors"],
    )
    summary["timestamp"] = now.isoformat()
    return summary
