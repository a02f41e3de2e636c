"""
sweets.services.snapshot_service — Daily Treasury Snapshot
===========================================================

One row per UTC day describing the state of the economy: treasury
balance, coins held by users and bots, coins ever issued (minus the mint
balance) and burned, coins expired in the last 24 hours and the pending
refund / expiration pipeline.

A snapshot is flagged ``anomaly`` when the sum of all wallet balances is
not zero (money appeared or vanished outside the ledger) or the treasury
balance moved by more than 10 % since the previous snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError

from sweets.constants import (
    BURN_OWNER_ID,
    MINT_OWNER_ID,
    SNAPSHOT_ANOMALY_RATIO,
    TREASURY_OWNER_ID,
)
from sweets.database.engine import get_session
from sweets.database.models import (
    BotRefund,
    CoinExpiration,
    ExpirationStatus,
    OwnerKind,
    RefundStatus,
    TreasurySnapshot,
    Wallet,
)
from sweets.engine.schedule import utcnow
from sweets.services.ledger_service import system_wallet

logger = logging.getLogger(__name__)


def _snapshot_dict(snap: TreasurySnapshot, *, created: bool) -> dict:
    return {
        "id": snap.id,
        "snapshot_date": snap.snapshot_date.isoformat(),
        "treasury_balance": snap.treasury_balance,
        "user_balance_total": snap.user_balance_total,
        "bot_balance_total": snap.bot_balance_total,
        "coins_issued": snap.coins_issued,
        "coins_burned": snap.coins_burned,
        "expired_last_24h": snap.expired_last_24h,
        "pending_refund_total": snap.pending_refund_total,
        "pending_expiration_total": snap.pending_expiration_total,
        "anomaly": snap.anomaly,
        "metadata": snap.metadata_,
        "created": created,
    }


def _balance_total(session, owner_kind: str) -> int:
    return int(session.scalar(
        select(func.coalesce(func.sum(Wallet.balance), 0))
        .where(Wallet.owner_kind == owner_kind)
    ) or 0)


def take_treasury_snapshot(engine: Engine, now: datetime | None = None) -> dict:
    """Record today's snapshot; a rerun on the same day returns the first one."""
    now = now or utcnow()
    today = now.date()

    with get_session(engine) as session:
        existing = session.scalars(
            select(TreasurySnapshot).where(TreasurySnapshot.snapshot_date == today)
        ).first()
        if existing is not None:
            return _snapshot_dict(existing, created=False)

        treasury = system_wallet(session, TREASURY_OWNER_ID)
        mint = system_wallet(session, MINT_OWNER_ID)
        burn = system_wallet(session, BURN_OWNER_ID)

        net_total = int(session.scalar(
            select(func.coalesce(func.sum(Wallet.balance), 0))
        ) or 0)
        expired_24h = int(session.scalar(
            select(func.coalesce(func.sum(CoinExpiration.processed_amount), 0))
            .where(
                CoinExpiration.status == ExpirationStatus.PROCESSED.value,
                CoinExpiration.actual_expired_at >= now - timedelta(hours=24),
            )
        ) or 0)
        pending_refunds = int(session.scalar(
            select(func.coalesce(func.sum(BotRefund.refund_amount), 0))
            .where(BotRefund.status == RefundStatus.PENDING.value)
        ) or 0)
        pending_expirations = int(session.scalar(
            select(func.coalesce(func.sum(CoinExpiration.expired_amount), 0))
            .where(CoinExpiration.status == ExpirationStatus.PENDING.value)
        ) or 0)

        previous = session.scalars(
            select(TreasurySnapshot)
            .where(TreasurySnapshot.snapshot_date < today)
            .order_by(TreasurySnapshot.snapshot_date.desc())
        ).first()

        reasons: list[str] = []
        if net_total != 0:
            reasons.append(f"wallet balances sum to {net_total}, expected 0")
        change_ratio = None
        if previous is not None and previous.treasury_balance > 0:
            change_ratio = (
                abs(treasury.balance - previous.treasury_balance) / previous.treasury_balance
            )
            if change_ratio > SNAPSHOT_ANOMALY_RATIO:
                reasons.append(f"treasury moved {change_ratio:.1%} since {previous.snapshot_date}")

        snap = TreasurySnapshot(
            snapshot_date=today,
            treasury_balance=treasury.balance,
            user_balance_total=_balance_total(session, OwnerKind.USER.value),
            bot_balance_total=_balance_total(session, OwnerKind.BOT.value),
            coins_issued=-mint.balance,
            coins_burned=burn.balance,
            expired_last_24h=expired_24h,
            pending_refund_total=pending_refunds,
            pending_expiration_total=pending_expirations,
            anomaly=bool(reasons),
            metadata_={"anomalies": reasons, "treasury_change_ratio": change_ratio},
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(snap)
                session.flush()
        except IntegrityError:
            # Concurrent run for the same day got there first
            existing = session.scalars(
                select(TreasurySnapshot).where(TreasurySnapshot.snapshot_date == today)
            ).first()
            if existing is None:
                raise
            return _snapshot_dict(existing, created=False)
        result = _snapshot_dict(snap, created=True)

    if reasons:
        logger.warning("Treasury snapshot %s flagged: %s", today.isoformat(), "; ".join(reasons))
    else:
        logger.info(
            "Treasury snapshot %s: treasury=%d users=%d bots=%d",
            today.isoformat(), result["treasury_balance"],
            result["user_balance_total"], result["bot_balance_total"],
        )
    return result
