"""
tests/test_treasury_service.py — Treasury Controller Tests
===========================================================
Daily budget, bot wallet ceilings, refills, drains and the daily reset.
"""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import DAILY_LIMIT, TREASURY_START
from sweets.database.models import AdminLog, LedgerTransaction, OwnerKind, TreasuryState, Wallet
from sweets.errors import CapExceeded, InsufficientBalance, InvalidEntrySet, WalletNotFound
from sweets.services import ledger_service, settings_service, treasury_service


def _state(engine) -> TreasuryState:
    with Session(engine) as session:
        state = treasury_service.get_state(session)
        session.expunge(state)
        return state


def _bot_balance(engine, bot_id: str) -> int:
    return ledger_service.get_wallet_summary(engine, OwnerKind.BOT, bot_id)["balance"]


def _set_today_spent(engine, value: int) -> None:
    with Session(engine) as session:
        treasury_service.get_state(session).today_spent = value
        session.commit()


def _make_bot(engine, bot_id: str, *, cap: int | None = None) -> None:
    with Session(engine) as session:
        ledger_service.get_or_create_wallet(session, OwnerKind.BOT, bot_id, cap=cap)
        session.commit()


class TestBotSpend:
    def test_spend_moves_coins_and_counts(self, engine):
        result = treasury_service.debit_for_bot_spend(engine, "bot-1", 30, "upvote")
        assert result.duplicate is False
        assert _bot_balance(engine, "bot-1") == 30

        state = _state(engine)
        assert state.today_spent == 30
        assert state.total_spent == 30
        assert treasury_service.get_treasury_stats(engine)["balance"] == TREASURY_START - 30

    def test_keyed_spend_counts_once(self, engine):
        treasury_service.debit_for_bot_spend(engine, "bot-1", 10, "tip", idempotency_key="s:1")
        again = treasury_service.debit_for_bot_spend(engine, "bot-1", 10, "tip", idempotency_key="s:1")
        assert again.duplicate is True
        assert _bot_balance(engine, "bot-1") == 10
        assert _state(engine).today_spent == 10

    def test_daily_cap_rejects_and_leaves_counter(self, engine):
        _set_today_spent(engine, DAILY_LIMIT - 50)
        with pytest.raises(CapExceeded) as exc_info:
            treasury_service.debit_for_bot_spend(engine, "bot-1", 100, "too much")

        assert exc_info.value.scope == "treasury_daily"
        assert exc_info.value.limit == DAILY_LIMIT
        assert _state(engine).today_spent == DAILY_LIMIT - 50
        with Session(engine) as session:
            assert session.scalar(select(func.count()).select_from(LedgerTransaction)) == 1  # genesis

    def test_spend_exactly_to_limit_allowed(self, engine):
        _set_today_spent(engine, DAILY_LIMIT - 40)
        treasury_service.debit_for_bot_spend(engine, "bot-1", 40, "last one")
        assert _state(engine).today_spent == DAILY_LIMIT

    def test_bot_wallet_ceiling(self, engine):
        _make_bot(engine, "capped", cap=50)
        treasury_service.debit_for_bot_spend(engine, "capped", 45, "first")
        with pytest.raises(CapExceeded) as exc_info:
            treasury_service.debit_for_bot_spend(engine, "capped", 10, "second")
        assert exc_info.value.scope == "bot_wallet"
        assert _bot_balance(engine, "capped") == 45

    def test_global_cap_setting_applies(self, engine):
        settings_service.upsert_setting(engine, key="economy.bot_wallet_cap", value=20)
        with pytest.raises(CapExceeded):
            treasury_service.debit_for_bot_spend(engine, "bot-2", 21, "x")

    def test_cap_disabled(self, engine):
        settings_service.upsert_setting(engine, key="economy.bot_wallet_cap_enabled", value=False)
        treasury_service.debit_for_bot_spend(engine, "bot-3", 500, "big")
        assert _bot_balance(engine, "bot-3") == 500

    def test_treasury_balance_must_cover(self, engine):
        settings_service.upsert_setting(engine, key="economy.bot_wallet_cap_enabled", value=False)
        treasury_service.set_daily_spend_limit(engine, TREASURY_START * 2)
        with pytest.raises(InsufficientBalance):
            treasury_service.debit_for_bot_spend(engine, "bot-4", TREASURY_START + 1, "x")

    def test_non_positive_amount(self, engine):
        with pytest.raises(InvalidEntrySet):
            treasury_service.debit_for_bot_spend(engine, "bot-1", 0, "nothing")


class TestCanAfford:
    def test_affordable(self, engine):
        assert treasury_service.can_afford(engine, "bot-1", 10) is True

    def test_bot_near_ceiling(self, engine):
        _make_bot(engine, "capped", cap=50)
        treasury_service.debit_for_bot_spend(engine, "capped", 45, "first")
        assert treasury_service.can_afford(engine, "capped", 10) is False

    def test_over_daily_budget(self, engine):
        _set_today_spent(engine, DAILY_LIMIT)
        assert treasury_service.can_afford(engine, "bot-1", 1) is False

    def test_never_writes(self, engine):
        treasury_service.can_afford(engine, "ghost-bot", 10)
        with Session(engine) as session:
            assert ledger_service.get_wallet(session, OwnerKind.BOT, "ghost-bot") is None
        assert _state(engine).today_spent == 0


class TestRefillAndDrain:
    def test_refill_issues_from_mint(self, engine):
        treasury_service.refill(engine, 500, actor_id="7", reason="top up", idempotency_key="refill:1")
        treasury_service.refill(engine, 500, actor_id="7", reason="top up", idempotency_key="refill:1")
        assert treasury_service.get_treasury_stats(engine)["balance"] == TREASURY_START + 500
        with Session(engine) as session:
            logs = session.scalars(select(AdminLog).where(AdminLog.action_type == "REFILL")).all()
            assert len(logs) == 1
            assert logs[0].after_snapshot["amount"] == 500

    def test_drain_takes_percentage_floor(self, engine):
        ledger_service.grant_reward(engine, "spammer", 99, "r:spam", "x")
        result = treasury_service.drain_wallet(engine, "spammer", 50, actor_id="7")
        assert result is not None
        assert ledger_service.get_wallet_summary(engine, OwnerKind.USER, "spammer")["balance"] == 50
        assert treasury_service.get_treasury_stats(engine)["balance"] == TREASURY_START - 99 + 49

    def test_drain_empty_wallet_is_noop(self, engine):
        with Session(engine) as session:
            ledger_service.get_or_create_wallet(session, OwnerKind.USER, "broke")
            session.commit()
        assert treasury_service.drain_wallet(engine, "broke", 100) is None

    def test_drain_unknown_user(self, engine):
        with pytest.raises(WalletNotFound):
            treasury_service.drain_wallet(engine, "nobody", 10)

    @pytest.mark.parametrize("pct", [0, 101, -1])
    def test_drain_bad_percentage(self, engine, pct):
        with pytest.raises(ValueError):
            treasury_service.drain_wallet(engine, "anyone", pct)


class TestDailyReset:
    def test_reset_zeroes_once_per_day(self, engine):
        treasury_service.debit_for_bot_spend(engine, "bot-1", 25, "x")
        day = date(2026, 5, 1)
        assert treasury_service.reset_daily_spend(engine, day) is True
        assert _state(engine).today_spent == 0

        treasury_service.debit_for_bot_spend(engine, "bot-1", 5, "y")
        assert treasury_service.reset_daily_spend(engine, day) is False
        assert _state(engine).today_spent == 5
        assert _state(engine).total_spent == 30

    def test_set_limit_audited(self, engine):
        treasury_service.set_daily_spend_limit(engine, 2000, actor_id="7")
        assert _state(engine).daily_spend_limit == 2000
        with Session(engine) as session:
            log = session.scalars(select(AdminLog)).one()
            assert log.before_snapshot == {"daily_spend_limit": DAILY_LIMIT}

    def test_negative_limit_rejected(self, engine):
        with pytest.raises(ValueError):
            treasury_service.set_daily_spend_limit(engine, -1)


def test_balances_sum_to_zero_after_spends(engine):
    treasury_service.debit_for_bot_spend(engine, "bot-1", 30, "x")
    treasury_service.refill(engine, 100)
    with Session(engine) as session:
        assert session.scalar(select(func.sum(Wallet.balance))) == 0
