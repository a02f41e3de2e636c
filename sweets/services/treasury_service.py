"""
sweets.services.treasury_service — Treasury Controller
=======================================================

The treasury is an ordinary system wallet plus one ``treasury_state`` row
holding the daily spend counter and limit.  Both are only ever changed
inside a ledger transaction, with the state row locked first, so the most
contended resource in the economy has a single serialization point.

Limits checked before a bot spend:

* **treasury_daily** — ``today_spent + amount`` may not exceed
  ``daily_spend_limit``.
* **bot_wallet** — a bot wallet may never hold more than its ceiling: the
  wallet's own ``cap`` if set, otherwise the ``economy.bot_wallet_cap``
  setting (when ``economy.bot_wallet_cap_enabled`` is on).
* the treasury balance itself must cover the amount.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from sweets.constants import MINT_OWNER_ID, TREASURY_STATE_ID
from sweets.database.engine import get_session
from sweets.database.models import (
    AdminActionType,
    AdminLog,
    OwnerKind,
    TransactionType,
    TreasuryState,
    Wallet,
)
from sweets.engine.entries import EntrySpec, TransactionResult, two_leg
from sweets.engine.schedule import today_utc
from sweets.errors import CapExceeded, InsufficientBalance, InvalidEntrySet, WalletNotFound
from sweets.services import ledger_service
from sweets.services.settings_service import get_setting_value

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State access
# ---------------------------------------------------------------------------
def get_state(session: Session, *, lock: bool = False) -> TreasuryState:
    stmt = select(TreasuryState).where(TreasuryState.id == TREASURY_STATE_ID)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    state = session.scalars(stmt).first()
    if state is None:
        raise WalletNotFound("Treasury is not initialised; run init_db first")
    return state


def bot_wallet_cap(session: Session, wallet: Wallet | None) -> int | None:
    """Effective ceiling for a bot wallet, or ``None`` if uncapped."""
    if wallet is not None and wallet.cap is not None:
        return wallet.cap
    if not get_setting_value(session, "economy.bot_wallet_cap_enabled", True):
        return None
    return int(get_setting_value(session, "economy.bot_wallet_cap", 199))


def _check_limits(
    session: Session,
    state: TreasuryState,
    treasury: Wallet,
    bot_wallet: Wallet | None,
    amount: int,
) -> None:
    if state.today_spent + amount > state.daily_spend_limit:
        raise CapExceeded("treasury_daily", state.daily_spend_limit, state.today_spent, amount)

    cap = bot_wallet_cap(session, bot_wallet)
    held = bot_wallet.balance if bot_wallet is not None else 0
    if cap is not None and held + amount > cap:
        raise CapExceeded("bot_wallet", cap, held, amount)

    if treasury.balance < amount:
        raise InsufficientBalance(treasury.id, treasury.balance, amount)


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidEntrySet(f"Amount must be a positive integer, got {amount!r}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def can_afford(engine: Engine, bot_id: str, amount: int) -> bool:
    """Read-only pre-check: would a spend of *amount* for *bot_id* pass?

    Checks the bot's wallet ceiling, the remaining daily budget and the
    treasury balance.  Never writes; a ``True`` answer is advisory since
    :func:`debit_for_bot_spend` re-checks under lock.
    """
    _require_positive(amount)
    with Session(engine) as session:
        state = get_state(session)
        treasury = session.get(Wallet, state.wallet_id)
        bot_wallet = ledger_service.get_wallet(session, OwnerKind.BOT, bot_id)
        try:
            _check_limits(session, state, treasury, bot_wallet, amount)
        except (CapExceeded, InsufficientBalance) as exc:
            logger.info("Bot %s cannot afford %d: %s", bot_id, amount, exc)
            return False
    return True


def spend_for_bot(
    session: Session,
    bot_id: str,
    amount: int,
    reason: str,
    *,
    idempotency_key: str,
    metadata: dict | None = None,
) -> TransactionResult:
    """Bot spend inside the caller's session (see :func:`debit_for_bot_spend`)."""
    _require_positive(amount)
    state = get_state(session, lock=True)

    prior = ledger_service.find_committed(session, idempotency_key)
    if prior is not None:
        logger.info("Bot spend %s already applied", idempotency_key)
        return prior

    bot_wallet = ledger_service.get_or_create_wallet(session, OwnerKind.BOT, bot_id)
    wallets = ledger_service.lock_wallets(session, (bot_wallet.id, state.wallet_id))
    treasury = wallets[state.wallet_id]
    bot_wallet = wallets[bot_wallet.id]

    try:
        _check_limits(session, state, treasury, bot_wallet, amount)
    except CapExceeded as exc:
        logger.warning("Bot spend declined for %s: %s", bot_id, exc)
        raise

    result = ledger_service.apply_transaction(
        session,
        TransactionType.BOT_SPEND,
        idempotency_key,
        [
            EntrySpec.credit(bot_wallet.id, amount, memo=reason),
            EntrySpec.debit(treasury.id, amount, memo=reason),
        ],
        {"bot_id": bot_id, "reason": reason, **(metadata or {})},
    )
    if not result.duplicate:
        state.today_spent += amount
        state.total_spent += amount
    logger.info(
        "Bot %s spent %d (%s); treasury today %d/%d",
        bot_id, amount, reason, state.today_spent, state.daily_spend_limit,
    )
    return result


def debit_for_bot_spend(
    engine: Engine,
    bot_id: str,
    amount: int,
    reason: str,
    *,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> TransactionResult:
    """Move *amount* from the treasury to the bot's wallet.

    Two legs (credit bot, debit treasury) in one ledger transaction; the
    daily spend counter is incremented in the same database transaction.

    Raises
    ------
    CapExceeded
        The daily budget or the bot's ceiling would be exceeded.  The spend
        counter is left unchanged and no ledger rows are written.
    InsufficientBalance
        The treasury cannot cover *amount*.
    """
    key = idempotency_key or f"bot_spend:{bot_id}:{uuid.uuid4()}"
    with get_session(engine) as session:
        return spend_for_bot(
            session, bot_id, amount, reason,
            idempotency_key=key, metadata=metadata,
        )


def refill(
    engine: Engine,
    amount: int,
    *,
    actor_id: str | None = None,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> TransactionResult:
    """Issue *amount* new coins from the mint into the treasury."""
    _require_positive(amount)
    key = idempotency_key or f"treasury_refill:{uuid.uuid4()}"
    with get_session(engine) as session:
        state = get_state(session, lock=True)
        mint = ledger_service.system_wallet(session, MINT_OWNER_ID)
        result = ledger_service.apply_transaction(
            session,
            TransactionType.TREASURY_REFILL,
            key,
            two_leg(mint.id, state.wallet_id, amount, memo=reason),
            {"reason": reason, "actor_id": actor_id},
        )
        if actor_id is not None and not result.duplicate:
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=AdminActionType.REFILL,
                target_table="treasury_state",
                target_id=str(state.id),
                after_snapshot={
                    "amount": amount,
                    "balance": result.balances.get(state.wallet_id),
                },
                reason=reason,
            ))
    logger.info("Treasury refilled with %d coins (actor=%s)", amount, actor_id)
    return result


def reset_daily_spend(engine: Engine, today: date | None = None) -> bool:
    """Zero the daily spend counter once per UTC day.

    Returns ``False`` (and changes nothing) if the counter was already
    reset for *today*.
    """
    today = today or today_utc()
    with get_session(engine) as session:
        state = get_state(session, lock=True)
        if state.last_reset_date == today:
            logger.info("Daily spend already reset for %s", today.isoformat())
            return False
        previous = state.today_spent
        state.today_spent = 0
        state.last_reset_date = today
    logger.info("Daily spend reset for %s (was %d)", today.isoformat(), previous)
    return True


def set_daily_spend_limit(engine: Engine, limit: int, *, actor_id: str | None = None) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValueError(f"Daily spend limit must be a non-negative integer, got {limit!r}")
    with get_session(engine) as session:
        state = get_state(session, lock=True)
        before = state.daily_spend_limit
        state.daily_spend_limit = limit
        if actor_id is not None and before != limit:
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=AdminActionType.UPDATE,
                target_table="treasury_state",
                target_id=str(state.id),
                before_snapshot={"daily_spend_limit": before},
                after_snapshot={"daily_spend_limit": limit},
            ))
    logger.info("Treasury daily spend limit %d → %d", before, limit)
    return limit


def drain_wallet(
    engine: Engine,
    user_id: str,
    percentage: int,
    *,
    actor_id: str | None = None,
    idempotency_key: str | None = None,
) -> TransactionResult | None:
    """Move ``floor(balance × percentage / 100)`` from a user to the treasury.

    Returns ``None`` when there is nothing to move.
    """
    if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 < percentage <= 100:
        raise InvalidEntrySet(f"Percentage must be between 1 and 100, got {percentage!r}")
    key = idempotency_key or f"platform_fee:{user_id}:{uuid.uuid4()}"
    with get_session(engine) as session:
        wallet = ledger_service.get_wallet(session, OwnerKind.USER, user_id)
        if wallet is None:
            raise WalletNotFound(f"No wallet for user:{user_id}")
        state = get_state(session)
        wallet = ledger_service.lock_wallets(session, (wallet.id,))[wallet.id]
        amount = wallet.balance * percentage // 100
        if amount <= 0:
            logger.info("Drain of user %s skipped: nothing to move", user_id)
            return None
        result = ledger_service.apply_transaction(
            session,
            TransactionType.PLATFORM_FEE,
            key,
            two_leg(wallet.id, state.wallet_id, amount),
            {"percentage": percentage, "actor_id": actor_id},
        )
        if actor_id is not None and not result.duplicate:
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=AdminActionType.DRAIN,
                target_table="wallets",
                target_id=str(wallet.id),
                before_snapshot={"balance": wallet.balance + amount},
                after_snapshot={"balance": wallet.balance, "percentage": percentage},
            ))
    logger.info("Drained %d coins (%d%%) from user %s", amount, percentage, user_id)
    return result


def get_treasury_stats(engine: Engine) -> dict:
    with Session(engine) as session:
        state = get_state(session)
        treasury = session.get(Wallet, state.wallet_id)
        cap_enabled = bool(get_setting_value(session, "economy.bot_wallet_cap_enabled", True))
        return {
            "balance": treasury.balance,
            "daily_spend_limit": state.daily_spend_limit,
            "today_spent": state.today_spent,
            "remaining_today": max(0, state.daily_spend_limit - state.today_spent),
            "total_spent": state.total_spent,
            "total_refunded": state.total_refunded,
            "last_reset_date": (
                state.last_reset_date.isoformat() if state.last_reset_date else None
            ),
            "bot_wallet_cap_enabled": cap_enabled,
            "bot_wallet_cap": int(get_setting_value(session, "economy.bot_wallet_cap", 199)),
        }
