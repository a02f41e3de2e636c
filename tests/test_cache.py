"""
tests/test_cache.py — ConfigCache & Settings Service Tests
===========================================================
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from sqlalchemy import select
from sqlalchemy.orm import Session

from sweets.database.models import AdminLog, Setting
from sweets.database.seed import DEFAULT_SETTINGS
from sweets.engine.cache import ConfigCache
from sweets.services import settings_service


class TestConfigCache:
    def test_unloaded_cache_returns_defaults(self):
        cache = ConfigCache(MagicMock())
        assert cache.loaded is False
        assert cache.get_int("economy.bot_wallet_cap", 7) == 7
        assert cache.get_bool("jobs.reconcile_fix_drift", True) is True

    def test_load_all_reads_seeded_settings(self, engine):
        cache = ConfigCache(engine)
        cache.load_all()
        assert cache.loaded is True
        assert cache.get_int("economy.bot_wallet_cap") == 199
        assert cache.get_bool("economy.bot_wallet_cap_enabled") is True
        assert cache.get_float("economy.expiration_horizon_days") == 90.0

    def test_refresh_picks_up_changes(self, engine):
        cache = ConfigCache(engine)
        cache.load_all()
        settings_service.upsert_setting(engine, key="economy.bot_wallet_cap", value=50)
        cache.refresh()
        assert cache.get_int("economy.bot_wallet_cap") == 50

    def test_refresh_keeps_previous_values_on_failure(self, engine):
        cache = ConfigCache(engine)
        cache.load_all()
        with patch.object(cache, "_load_settings", side_effect=RuntimeError("db gone")):
            cache.refresh()
        assert cache.get_int("economy.bot_wallet_cap") == 199

    def test_bad_int_falls_back(self, engine):
        settings_service.upsert_setting(engine, key="economy.bot_wallet_cap", value="lots")
        cache = ConfigCache(engine)
        cache.load_all()
        assert cache.get_int("economy.bot_wallet_cap", 5) == 5


class TestSettingsService:
    def test_defaults_seeded_once(self, engine):
        with Session(engine) as session:
            count = len(session.scalars(select(Setting)).all())
        assert count == len(DEFAULT_SETTINGS)

    def test_get_setting_value(self, engine):
        with Session(engine) as session:
            assert settings_service.get_setting_value(session, "economy.refund_delay_days") == 1
            assert settings_service.get_setting_value(session, "missing", "x") == "x"

    def test_bulk_upsert_audits_changes_only(self, engine):
        touched = settings_service.bulk_upsert(
            engine,
            [
                {"key": "economy.bot_wallet_cap", "value": 250},
                {"key": "economy.refund_delay_days", "value": 1},  # unchanged
                {"key": "ops.banner", "value": "hi", "category": "ops"},
            ],
            actor_id="42",
        )
        assert touched == 3
        with Session(engine) as session:
            logs = session.scalars(select(AdminLog).order_by(AdminLog.id)).all()
            assert [(r.action_type, r.target_id) for r in logs] == [
                ("UPDATE", "economy.bot_wallet_cap"),
                ("CREATE", "ops.banner"),
            ]
            assert logs[0].before_snapshot["value"] == 199
            assert logs[0].after_snapshot["value"] == 250
