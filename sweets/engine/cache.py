"""
sweets.engine.cache — In-Memory Settings Cache
===============================================

Thread-safe cache of the ``settings`` table for long-running processes.
The worker refreshes it before each job run so admin edits made through
the API take effect on the next scheduled batch without a restart.

Request-scoped service code reads settings inside its own session via
:func:`sweets.services.settings_service.get_setting_value` instead, so a
decision and the rows it guards share one transaction.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sweets.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class ConfigCache:
    """Thread-safe in-memory cache for economy settings.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()

        cap = cache.get_int("economy.bot_wallet_cap", default=199)
        enabled = cache.get_bool("economy.bot_wallet_cap_enabled", default=True)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}
        self._loaded_at: float | None = None

    # -------------------------------------------------------------------
    # Cache loading (synchronous — called via run_db or directly)
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load the settings partition from DB. Call on startup."""
        self._load_settings()
        logger.info("Config cache loaded: %d settings", len(self._settings))

    def refresh(self) -> None:
        """Reload settings; keeps the previous values if the reload fails."""
        try:
            self._load_settings()
        except Exception:
            logger.exception("Config cache refresh failed; keeping previous values")

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed
            self._loaded_at = time.monotonic()

    # -------------------------------------------------------------------
    # Cache reads (thread-safe)
    # -------------------------------------------------------------------
    @property
    def loaded(self) -> bool:
        with self._lock:
            return self._loaded_at is not None

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)
