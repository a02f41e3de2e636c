"""
sweets.database.seed — Default Settings & System Wallets
=========================================================

Baseline rows written on every startup:

* economy settings admins can tune from the API,
* the three system wallets (treasury, mint, burn),
* the singleton ``treasury_state`` row,
* a one-time genesis refill that funds the treasury from the mint.

Idempotent — only inserts what doesn't already exist.  Settings changed by
admins are never overwritten, and the genesis refill is keyed so it can
only ever apply once.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from sweets.constants import (
    BURN_OWNER_ID,
    GENESIS_REASON,
    MINT_OWNER_ID,
    TREASURY_OWNER_ID,
    TREASURY_STATE_ID,
    genesis_key,
)
from sweets.database.models import OwnerKind, Setting, TransactionType, TreasuryState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "economy.bot_wallet_cap_enabled": (
        True, "economy", "Enforce a ceiling on how many coins a bot wallet may hold",
    ),
    "economy.bot_wallet_cap": (
        199, "economy", "Default bot wallet ceiling (a per-wallet cap overrides it)",
    ),
    "economy.expiration_horizon_days": (
        90, "economy", "Days after a grant before unspent coins expire",
    ),
    "economy.refund_delay_days": (
        1, "economy", "Days between disqualifying a bot action and its refund",
    ),
    "economy.max_transaction_amount": (
        1000, "economy", "Most coins one purchase, reward or transfer may move (0 = no limit)",
    ),
    "economy.max_transactions_per_minute": (
        10, "economy", "Purchases, rewards and transfers allowed per user per minute (0 = no limit)",
    ),
    "jobs.reset_daily_after_refunds": (
        True, "jobs", "Reset the treasury daily spend counter after the refund batch",
    ),
    "jobs.reconcile_fix_drift": (
        False, "jobs", "Let weekly reconciliation overwrite drifted wallet balances",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist."""
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)


def seed_system_wallets(
    engine: Engine,
    *,
    initial_treasury_balance: int = 0,
    daily_spend_limit: int = 500,
) -> None:
    """Create system wallets and the treasury state row, then fund once.

    The mint is the only wallet allowed below zero: its balance is minus
    the total number of coins ever issued.
    """
    from sweets.engine.entries import two_leg
    from sweets.services.ledger_service import apply_transaction, get_or_create_wallet

    session = Session(engine)
    try:
        treasury = get_or_create_wallet(session, OwnerKind.SYSTEM, TREASURY_OWNER_ID)
        mint = get_or_create_wallet(
            session, OwnerKind.SYSTEM, MINT_OWNER_ID, allow_negative=True,
        )
        get_or_create_wallet(session, OwnerKind.SYSTEM, BURN_OWNER_ID)

        if session.get(TreasuryState, TREASURY_STATE_ID) is None:
            session.add(TreasuryState(
                id=TREASURY_STATE_ID,
                wallet_id=treasury.id,
                daily_spend_limit=daily_spend_limit,
                today_spent=0,
                total_spent=0,
                total_refunded=0,
            ))
            logger.info("Treasury state created (daily limit %d)", daily_spend_limit)

        if initial_treasury_balance > 0:
            result = apply_transaction(
                session,
                TransactionType.TREASURY_REFILL,
                genesis_key(),
                two_leg(mint.id, treasury.id, initial_treasury_balance, memo=GENESIS_REASON),
                {"reason": GENESIS_REASON},
            )
            if not result.duplicate:
                logger.info("Treasury funded with %d coins", initial_treasury_balance)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
