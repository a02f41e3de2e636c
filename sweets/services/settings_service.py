"""
sweets.services.settings_service — Settings CRUD & Audit
=========================================================

Typed read/write access to the ``settings`` table.  When an actor id is
supplied, every change is recorded in ``admin_log`` with before/after
snapshots.  Long-running processes pick up changes on their next
:meth:`~sweets.engine.cache.ConfigCache.refresh`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from sweets.database.engine import get_session
from sweets.database.models import AdminActionType, AdminLog, Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's parsed value from an existing session.

    Parameters
    ----------
    session : Session
        An open SQLAlchemy session.
    key : str
        The setting key to look up.
    default
        Returned when the key does not exist or the stored JSON is invalid.
    """
    row = session.get(Setting, key)
    if row is None:
        return default
    try:
        return json.loads(row.value_json)
    except (json.JSONDecodeError, TypeError):
        return default


def get_all_settings(engine) -> list[Setting]:
    """Fetch every setting row, ordered by category then key."""
    with Session(engine) as session:
        rows = session.scalars(
            select(Setting).order_by(Setting.category, Setting.key)
        ).all()
        # Expunge so callers can read outside the session
        for r in rows:
            session.expunge(r)
        return list(rows)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _snapshot(row: Setting) -> dict:
    return {
        "key": row.key,
        "value": json.loads(row.value_json) if row.value_json else None,
        "category": row.category,
        "description": row.description,
    }


def _apply(session: Session, item: dict, actor_id: str | None) -> None:
    key = item["key"]
    existing = session.get(Setting, key)
    before = _snapshot(existing) if existing is not None else None

    if existing is not None:
        existing.value_json = json.dumps(item["value"])
        if item.get("category"):
            existing.category = item["category"]
        if item.get("description") is not None:
            existing.description = item["description"]
    else:
        existing = Setting(
            key=key,
            value_json=json.dumps(item["value"]),
            category=item.get("category") or "general",
            description=item.get("description"),
        )
        session.add(existing)

    if actor_id is not None:
        after = _snapshot(existing)
        # Only log if something actually changed
        if before != after:
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=AdminActionType.UPDATE if before else AdminActionType.CREATE,
                target_table="settings",
                target_id=key,
                before_snapshot=before,
                after_snapshot=after,
            ))


def upsert_setting(
    engine,
    *,
    key: str,
    value: Any,
    category: str = "general",
    description: str | None = None,
    actor_id: str | None = None,
) -> None:
    """Insert or update a single setting."""
    with get_session(engine) as session:
        _apply(
            session,
            {"key": key, "value": value, "category": category, "description": description},
            actor_id,
        )
    logger.info("Setting %s updated", key)


def bulk_upsert(engine, settings: list[dict], *, actor_id: str | None = None) -> int:
    """Upsert many settings at once.

    Each dict should have at least ``key`` and ``value``.
    Optional: ``category``, ``description``.

    Returns the number of rows touched.
    """
    count = 0
    with get_session(engine) as session:
        for item in settings:
            _apply(session, item, actor_id)
            count += 1
    if count:
        logger.info("Bulk settings update: %d keys", count)
    return count
