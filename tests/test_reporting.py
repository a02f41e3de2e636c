"""
tests/test_reporting.py — Reconciliation & Treasury Snapshot Tests
===================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import TREASURY_START
from sweets.database.models import OwnerKind, ReconciliationRun, TransactionType, TreasurySnapshot, Wallet
from sweets.engine.entries import two_leg
from sweets.services import ledger_service, reconciliation_service, snapshot_service, treasury_service

DAY_ONE = datetime(2026, 7, 1, 0, 5, tzinfo=UTC)


def _corrupt_balance(engine, owner_kind: str, owner_id: str, delta: int) -> int:
    with Session(engine) as session:
        wallet = ledger_service.get_wallet(session, owner_kind, owner_id)
        wallet.balance += delta
        session.commit()
        return wallet.id


class TestReconciliation:
    def test_clean_books(self, engine):
        ledger_service.grant_reward(engine, "alice", 10, "r:alice", "x")
        report = reconciliation_service.reconcile_wallets(engine)
        assert report["drift_count"] == 0
        assert report["unbalanced_transactions"] == []
        assert report["checked"] == 4  # treasury, mint, burn, alice
        with Session(engine) as session:
            assert session.get(ReconciliationRun, report["run_id"]).status == "ok"

    def test_detects_drift_without_fixing(self, engine):
        ledger_service.grant_reward(engine, "bob", 10, "r:bob", "x")
        wallet_id = _corrupt_balance(engine, OwnerKind.USER, "bob", 250)

        report = reconciliation_service.reconcile_wallets(engine)

        assert report["drift_count"] == 1
        assert report["max_delta"] == 250
        correction = report["corrections"][0]
        assert correction["wallet_id"] == wallet_id
        assert (correction["stored"], correction["actual"]) == (260, 10)
        assert correction["severity"] == "major"
        assert ledger_service.get_wallet_summary(engine, OwnerKind.USER, "bob")["balance"] == 260

    def test_fix_drift_keeps_concurrent_posting(self, engine, monkeypatch):
        ledger_service.grant_reward(engine, "bob", 10, "r:bob", "x")
        wallet_id = _corrupt_balance(engine, OwnerKind.USER, "bob", 250)

        original = ledger_service.lock_wallets
        posted = []

        def racing(session, wallet_ids):
            if not posted:
                posted.append(True)
                # A reward lands between the drift scan and the correction
                rival = Session(bind=session.connection(), join_transaction_mode="create_savepoint")
                try:
                    treasury = ledger_service.system_wallet(rival)
                    ledger_service.apply_transaction(
                        rival, TransactionType.REWARD, "r:bob:late",
                        two_leg(treasury.id, wallet_id, 20),
                    )
                    rival.commit()
                finally:
                    rival.close()
            return original(session, wallet_ids)

        monkeypatch.setattr(ledger_service, "lock_wallets", racing)
        report = reconciliation_service.reconcile_wallets(engine, fix_drift=True)

        assert posted
        assert report["fixed"] is True
        assert ledger_service.get_wallet_summary(engine, OwnerKind.USER, "bob")["balance"] == 30
        with Session(engine) as session:
            assert ledger_service.entry_sum(session, wallet_id) == 30
        assert reconciliation_service.reconcile_wallets(engine)["drift_count"] == 0

    def test_fix_drift_restores_entry_sum(self, engine):
        ledger_service.grant_reward(engine, "cara", 10, "r:cara", "x")
        _corrupt_balance(engine, OwnerKind.USER, "cara", -3)

        report = reconciliation_service.reconcile_wallets(engine, fix_drift=True)

        assert report["fixed"] is True
        assert ledger_service.get_wallet_summary(engine, OwnerKind.USER, "cara")["balance"] == 10
        assert reconciliation_service.reconcile_wallets(engine)["drift_count"] == 0

    def test_severity_bands(self):
        assert reconciliation_service.drift_severity(-99) == "minor"
        assert reconciliation_service.drift_severity(100) == "major"
        assert reconciliation_service.drift_severity(5000) == "critical"


class TestSnapshot:
    def test_first_snapshot(self, engine):
        ledger_service.grant_reward(engine, "alice", 100, "r:alice", "x")
        treasury_service.debit_for_bot_spend(engine, "bot-1", 20, "x")

        snap = snapshot_service.take_treasury_snapshot(engine, DAY_ONE)

        assert snap["created"] is True
        assert snap["anomaly"] is False
        assert snap["treasury_balance"] == TREASURY_START - 120
        assert snap["user_balance_total"] == 100
        assert snap["bot_balance_total"] == 20
        assert snap["coins_issued"] == TREASURY_START
        assert snap["coins_burned"] == 0

    def test_same_day_returns_existing(self, engine):
        first = snapshot_service.take_treasury_snapshot(engine, DAY_ONE)
        second = snapshot_service.take_treasury_snapshot(engine, DAY_ONE + timedelta(hours=5))
        assert second["created"] is False
        assert second["id"] == first["id"]
        with Session(engine) as session:
            assert len(session.scalars(select(TreasurySnapshot)).all()) == 1

    def test_large_treasury_move_flagged(self, engine):
        snapshot_service.take_treasury_snapshot(engine, DAY_ONE)
        treasury_service.refill(engine, TREASURY_START // 2)

        snap = snapshot_service.take_treasury_snapshot(engine, DAY_ONE + timedelta(days=1))

        assert snap["anomaly"] is True
        assert snap["metadata"]["treasury_change_ratio"] == 0.5

    def test_small_move_not_flagged(self, engine):
        snapshot_service.take_treasury_snapshot(engine, DAY_ONE)
        ledger_service.grant_reward(engine, "alice", 100, "r:alice", "x")
        snap = snapshot_service.take_treasury_snapshot(engine, DAY_ONE + timedelta(days=1))
        assert snap["anomaly"] is False

    def test_unbalanced_books_flagged(self, engine):
        with Session(engine) as session:
            session.add(Wallet(
                owner_kind=OwnerKind.USER.value, owner_id="forged", balance=5,
                lifetime_earned=0, lifetime_spent=0, allow_negative=False, version=0,
            ))
            session.commit()
        snap = snapshot_service.take_treasury_snapshot(engine, DAY_ONE)
        assert snap["anomaly"] is True
        assert "expected 0" in snap["metadata"]["anomalies"][0]
