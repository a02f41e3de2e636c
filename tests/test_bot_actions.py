"""
tests/test_bot_actions.py — Bot Action Recorder & Refund Job Tests
===================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import TREASURY_START
from sweets.database.models import (
    AdminActionType,
    AdminLog,
    BotAction,
    BotRefund,
    LedgerTransaction,
    OwnerKind,
    RefundStatus,
    TransactionType,
    TreasuryState,
    Wallet,
)
from sweets.errors import AlreadyRefunded, BotActionNotFound, InvalidEntrySet, StoreUnavailable
from sweets.services import bot_action_service, ledger_service, refund_service, treasury_service

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)
LATER = NOW + timedelta(days=2)


def _spend(engine, cost: int = 5, target_id: str = "post-1", bot_id: str = "bot-1") -> str:
    return bot_action_service.record_spend(
        engine, bot_id, "upvote", "post", target_id, cost, {"score": 0.9},
    )


def _bot_balance(engine, bot_id: str = "bot-1") -> int:
    return ledger_service.get_wallet_summary(engine, OwnerKind.BOT, bot_id)["balance"]


def _treasury_balance(engine) -> int:
    return treasury_service.get_treasury_stats(engine)["balance"]


def _refund_count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(LedgerTransaction)
            .where(LedgerTransaction.type == TransactionType.REFUND.value)
        )


class TestRecordSpend:
    def test_records_action_with_transaction(self, engine):
        action_id = _spend(engine)
        with Session(engine) as session:
            action = session.get(BotAction, action_id)
            assert action.coin_cost == 5
            assert action.was_refunded is False
            assert action.transaction_id is not None
            assert action.metadata_ == {"score": 0.9}
        assert _bot_balance(engine) == 5

    def test_retry_returns_same_action(self, engine):
        first = _spend(engine)
        second = _spend(engine)
        assert first == second
        assert _bot_balance(engine) == 5
        assert len(bot_action_service.list_actions(engine, "bot-1")) == 1

    def test_zero_cost_records_without_transaction(self, engine):
        action_id = _spend(engine, cost=0, target_id="post-free")
        with Session(engine) as session:
            assert session.get(BotAction, action_id).transaction_id is None

    def test_negative_cost_rejected(self, engine):
        with pytest.raises(InvalidEntrySet):
            _spend(engine, cost=-1)

    def test_concurrent_record_returns_winner(self, engine, monkeypatch):
        original = treasury_service.spend_for_bot
        winner: list[str] = []

        def racing(session, bot_id, amount, reason, **kwargs):
            if not winner:
                rival = Session(bind=session.connection(), join_transaction_mode="create_savepoint")
                try:
                    result = original(rival, bot_id, amount, reason, **kwargs)
                    action = BotAction(
                        id="rival-action",
                        bot_id=bot_id,
                        action_type="upvote",
                        target_type="post",
                        target_id="post-1",
                        coin_cost=amount,
                        idempotency_key=kwargs["idempotency_key"],
                        transaction_id=result.transaction_id,
                        was_refunded=False,
                    )
                    rival.add(action)
                    winner.append(action.id)
                    rival.commit()
                finally:
                    rival.close()
            return original(session, bot_id, amount, reason, **kwargs)

        monkeypatch.setattr(treasury_service, "spend_for_bot", racing)
        action_id = _spend(engine)

        assert action_id == winner[0] == "rival-action"
        assert len(bot_action_service.list_actions(engine, "bot-1")) == 1
        assert _bot_balance(engine) == 5
        assert treasury_service.get_treasury_stats(engine)["today_spent"] == 5

    def test_list_actions_filters_by_bot(self, engine):
        _spend(engine, bot_id="bot-1")
        _spend(engine, bot_id="bot-2")
        actions = bot_action_service.list_actions(engine, "bot-2")
        assert [a["bot_id"] for a in actions] == ["bot-2"]


class TestMarkRefunded:
    def test_second_mark_fails(self, engine):
        action_id = _spend(engine)
        with Session(engine) as session:
            action = bot_action_service.mark_refunded(session, action_id, now=NOW)
            assert action.was_refunded is True
            session.commit()

        with Session(engine) as session:
            with pytest.raises(AlreadyRefunded):
                bot_action_service.mark_refunded(session, action_id, now=NOW)

    def test_unknown_action(self, engine):
        with Session(engine) as session:
            with pytest.raises(BotActionNotFound):
                bot_action_service.mark_refunded(session, "no-such-action")


class TestScheduleRefund:
    def test_schedule_is_idempotent(self, engine):
        action_id = _spend(engine)
        first = bot_action_service.schedule_refund(engine, action_id, now=NOW)
        second = bot_action_service.schedule_refund(engine, action_id, now=NOW)
        assert first == second
        with Session(engine) as session:
            refund = session.get(BotRefund, first)
            assert refund.status == RefundStatus.PENDING
            assert refund.refund_amount == 5
            assert refund.scheduled_for.replace(tzinfo=UTC) == datetime(2026, 6, 2, 3, 0, tzinfo=UTC)

    def test_audit_row_written_with_refund(self, engine):
        action_id = _spend(engine)
        refund_id = bot_action_service.schedule_refund(
            engine, action_id, reason="vote ring", now=NOW, actor_id="42",
        )
        bot_action_service.schedule_refund(engine, action_id, now=NOW, actor_id="42")

        with Session(engine) as session:
            logs = session.scalars(
                select(AdminLog).where(AdminLog.action_type == AdminActionType.DISQUALIFY.value)
            ).all()
        assert len(logs) == 1
        assert logs[0].actor_id == "42"
        assert logs[0].target_id == action_id
        assert logs[0].after_snapshot == {"refund_id": refund_id, "refund_amount": 5}
        assert logs[0].reason == "vote ring"

    def test_rejected_refund_leaves_no_audit_row(self, engine):
        action_id = _spend(engine)
        with pytest.raises(InvalidEntrySet):
            bot_action_service.schedule_refund(
                engine, action_id, refund_amount=6, now=NOW, actor_id="42",
            )
        with Session(engine) as session:
            assert session.scalar(select(func.count()).select_from(AdminLog)) == 0

    def test_partial_amount_bounds(self, engine):
        action_id = _spend(engine)
        with pytest.raises(InvalidEntrySet):
            bot_action_service.schedule_refund(engine, action_id, refund_amount=6, now=NOW)

    def test_free_action_has_nothing_to_refund(self, engine):
        action_id = _spend(engine, cost=0, target_id="free")
        with pytest.raises(InvalidEntrySet):
            bot_action_service.schedule_refund(engine, action_id, now=NOW)

    def test_unknown_action(self, engine):
        with pytest.raises(BotActionNotFound):
            bot_action_service.schedule_refund(engine, "missing", now=NOW)


class TestRefundRun:
    def test_refund_returns_coins_to_treasury(self, engine):
        action_id = _spend(engine)
        refund_id = bot_action_service.schedule_refund(engine, action_id, now=NOW)

        summary = refund_service.run_refunds(engine, LATER)

        assert summary["candidates"] == 1
        assert summary["processed"] == 1
        assert summary["refunded_amount"] == 5
        assert _bot_balance(engine) == 0
        assert _treasury_balance(engine) == TREASURY_START
        with Session(engine) as session:
            refund = session.get(BotRefund, refund_id)
            assert refund.status == RefundStatus.PROCESSED
            assert refund.transaction_id is not None
            assert session.get(BotAction, action_id).was_refunded is True
            assert session.get(TreasuryState, 1).total_refunded == 5

    def test_not_yet_due_is_left_alone(self, engine):
        action_id = _spend(engine)
        bot_action_service.schedule_refund(engine, action_id, now=NOW)
        summary = refund_service.run_refunds(engine, NOW)
        assert summary["candidates"] == 0
        assert _bot_balance(engine) == 5

    def test_second_run_refunds_nothing(self, engine):
        action_id = _spend(engine)
        bot_action_service.schedule_refund(engine, action_id, now=NOW)
        refund_service.run_refunds(engine, LATER)
        second = refund_service.run_refunds(engine, LATER)
        assert second["processed"] == 0
        assert _refund_count(engine) == 1

    def test_failed_candidate_does_not_stop_batch(self, engine):
        good = _spend(engine, target_id="post-good")
        bad = _spend(engine, target_id="post-bad")
        bot_action_service.schedule_refund(engine, good, now=NOW)
        bad_refund = bot_action_service.schedule_refund(engine, bad, now=NOW)

        # Flag the action as refunded behind the job's back
        with Session(engine) as session:
            session.get(BotAction, bad).was_refunded = True
            session.commit()

        summary = refund_service.run_refunds(engine, LATER)
        assert summary["processed"] == 1
        assert summary["failed"] == 1
        with Session(engine) as session:
            refund = session.get(BotRefund, bad_refund)
            assert refund.status == RefundStatus.FAILED
            assert "already refunded" in refund.error

    def test_store_outage_defers_and_releases(self, engine):
        action_id = _spend(engine)
        refund_id = bot_action_service.schedule_refund(engine, action_id, now=NOW)

        with patch.object(
            refund_service.ledger_service, "apply_transaction",
            side_effect=StoreUnavailable("connection reset"),
        ):
            summary = refund_service.run_refunds(engine, LATER, reset_daily=False)

        assert summary["deferred"] == 1
        assert summary["processed"] == 0
        assert summary["failed"] == 0
        assert _refund_count(engine) == 0
        assert _bot_balance(engine) == 5
        with Session(engine) as session:
            assert session.get(BotRefund, refund_id).status == RefundStatus.PENDING
            assert session.get(BotAction, action_id).was_refunded is False

        retry = refund_service.run_refunds(engine, LATER, reset_daily=False)
        assert retry["processed"] == 1
        assert _bot_balance(engine) == 0

    def test_run_resets_daily_counter(self, engine):
        _spend(engine)
        summary = refund_service.run_refunds(engine, LATER)
        assert summary["daily_reset"] is True
        assert treasury_service.get_treasury_stats(engine)["today_spent"] == 0

    def test_reset_can_be_disabled(self, engine):
        _spend(engine)
        summary = refund_service.run_refunds(engine, LATER, reset_daily=False)
        assert summary["daily_reset"] is False
        assert treasury_service.get_treasury_stats(engine)["today_spent"] == 5

    def test_books_balance_after_refunds(self, engine):
        action_id = _spend(engine, cost=12)
        bot_action_service.schedule_refund(engine, action_id, refund_amount=7, now=NOW)
        refund_service.run_refunds(engine, LATER)
        assert _bot_balance(engine) == 5
        with Session(engine) as session:
            assert session.scalar(select(func.sum(Wallet.balance))) == 0
