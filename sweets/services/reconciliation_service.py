"""
sweets.services.reconciliation_service — Wallet Balance Reconciliation
=======================================================================

Weekly job that validates every cached ``wallets.balance`` against the
signed sum of its committed ledger entries.

How it works:
    1. ``SUM(credit) - SUM(debit)`` per wallet over committed transactions.
    2. Compare against the stored balance; any mismatch is drift.
    3. Check every committed transaction is balanced
       (``SUM(credit) == SUM(debit)``).
    4. If *fix_drift* is set, lock each drifted wallet, recompute its entry
       sum under the lock and overwrite the balance if it still disagrees.
    5. Persist a ``reconciliation_runs`` row and log all findings.

Drift severity: ``minor`` (< 100 coins), ``major`` (< 1000), ``critical``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, case, func, select

from sweets.database.engine import get_session
from sweets.database.models import (
    EntryDirection,
    LedgerEntry,
    LedgerTransaction,
    ReconciliationRun,
    TransactionStatus,
    Wallet,
)
from sweets.services import ledger_service

logger = logging.getLogger(__name__)


def drift_severity(delta: int) -> str:
    size = abs(delta)
    if size < 100:
        return "minor"
    if size < 1000:
        return "major"
    return "critical"


def _fix_balance(session, wallet_id: int) -> None:
    # Entry sum is read under the same lock every posting path holds.
    wallet = ledger_service.lock_wallets(session, (wallet_id,))[wallet_id]
    actual = ledger_service.entry_sum(session, wallet_id)
    if wallet.balance != actual:
        logger.warning(
            "Correcting wallet %s balance %d → %d", wallet_id, wallet.balance, actual,
        )
        wallet.balance = actual


def reconcile_wallets(engine: Engine, *, fix_drift: bool = False) -> dict:
    """Validate wallet balances against ledger entries and optionally fix drift.

    Returns ``{"checked", "drift_count", "max_delta", "corrections",
    "unbalanced_transactions", "run_id", "timestamp"}``.
    """
    started = datetime.now(UTC)
    corrections: list[dict] = []

    credit = case(
        (LedgerEntry.direction == EntryDirection.CREDIT.value, LedgerEntry.amount),
        else_=0,
    )
    debit = case(
        (LedgerEntry.direction == EntryDirection.DEBIT.value, LedgerEntry.amount),
        else_=0,
    )
    committed = LedgerTransaction.status == TransactionStatus.COMMITTED.value

    with get_session(engine) as session:
        # Ground truth: signed entry sum per wallet
        truth_rows = session.execute(
            select(
                LedgerEntry.wallet_id,
                func.sum(credit).label("credits"),
                func.sum(debit).label("debits"),
            )
            .join(LedgerTransaction, LedgerTransaction.id == LedgerEntry.transaction_id)
            .where(committed)
            .group_by(LedgerEntry.wallet_id)
        ).all()
        truth_map: dict[int, int] = {
            row.wallet_id: int(row.credits or 0) - int(row.debits or 0)
            for row in truth_rows
        }

        wallets = session.scalars(select(Wallet).order_by(Wallet.id)).all()
        for wallet in wallets:
            actual = truth_map.get(wallet.id, 0)
            if wallet.balance == actual:
                continue
            delta = actual - wallet.balance
            corrections.append({
                "wallet_id": wallet.id,
                "owner": f"{wallet.owner_kind}:{wallet.owner_id}",
                "stored": wallet.balance,
                "actual": actual,
                "diff": delta,
                "severity": drift_severity(delta),
            })
            if fix_drift:
                _fix_balance(session, wallet.id)

        unbalanced_rows = session.execute(
            select(LedgerEntry.transaction_id)
            .join(LedgerTransaction, LedgerTransaction.id == LedgerEntry.transaction_id)
            .where(committed)
            .group_by(LedgerEntry.transaction_id)
            .having(func.sum(credit) != func.sum(debit))
        ).all()
        unbalanced = [row.transaction_id for row in unbalanced_rows]

        max_delta = max((abs(c["diff"]) for c in corrections), default=0)
        run = ReconciliationRun(
            status="drift" if corrections or unbalanced else "ok",
            wallets_checked=len(wallets),
            drift_count=len(corrections),
            max_delta=max_delta,
            unbalanced_transactions=len(unbalanced),
            fixed=fix_drift and bool(corrections),
            report={"corrections": corrections, "unbalanced": unbalanced},
            started_at=started,
            finished_at=datetime.now(UTC),
        )
        session.add(run)
        session.flush()
        run_id = run.id
        checked = len(wallets)

    if corrections or unbalanced:
        logger.warning(
            "Wallet reconciliation: %d/%d wallets drifted (max %d, fixed=%s), "
            "%d unbalanced transactions: %s",
            len(corrections), checked, max_delta, fix_drift, len(unbalanced), corrections,
        )
    else:
        logger.info("Wallet reconciliation: all %d wallets match", checked)

    return {
        "checked": checked,
        "drift_count": len(corrections),
        "max_delta": max_delta,
        "corrections": corrections,
        "fixed": fix_drift and bool(corrections),
        "unbalanced_transactions": unbalanced,
        "run_id": run_id,
        "timestamp": started.isoformat(),
    }
