"""
sweets.api.routes.admin — Operator endpoints (admin JWT)
========================================================
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sweets.api.deps import get_config, get_current_admin, get_engine
from sweets.config import SweetsConfig
from sweets.database.models import AdminActionType, AdminLog, TreasurySnapshot
from sweets.engine.cache import ConfigCache
from sweets.services import bot_action_service, settings_service, treasury_service
from sweets.services.log_buffer import (
    VALID_LEVELS,
    get_current_level,
    get_logs,
    set_capture_level,
)
from sweets.services.notification_service import build_notifier
from sweets.worker.tasks import JOB_NAMES, build_jobs

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RefillRequest(BaseModel):
    amount: int = Field(gt=0)
    reason: str | None = None
    idempotency_key: str | None = None


class DailyLimitUpdate(BaseModel):
    daily_spend_limit: int = Field(ge=0)


class DrainRequest(BaseModel):
    user_id: str
    percentage: int = Field(gt=0, le=100)
    idempotency_key: str | None = None


class DisqualifyRequest(BaseModel):
    reason: str = "Bot action disqualified"
    refund_amount: int | None = Field(default=None, gt=0)


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


class LogLevelUpdate(BaseModel):
    level: str


# ---------------------------------------------------------------------------
# Treasury
# ---------------------------------------------------------------------------
@router.post("/treasury/refill")
def refill_treasury(
    body: RefillRequest,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    result = treasury_service.refill(
        engine,
        body.amount,
        actor_id=admin.get("sub"),
        reason=body.reason,
        idempotency_key=body.idempotency_key,
    )
    return result.to_dict()


@router.put("/treasury/daily-limit")
def update_daily_limit(
    body: DailyLimitUpdate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    limit = treasury_service.set_daily_spend_limit(
        engine, body.daily_spend_limit, actor_id=admin.get("sub"),
    )
    return {"daily_spend_limit": limit}


@router.post("/wallets/drain")
def drain_wallet(
    body: DrainRequest,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    result = treasury_service.drain_wallet(
        engine,
        body.user_id,
        body.percentage,
        actor_id=admin.get("sub"),
        idempotency_key=body.idempotency_key,
    )
    return {"drained": result is not None, "result": result.to_dict() if result else None}


@router.get("/treasury/snapshots")
def list_snapshots(
    limit: int = Query(30, ge=1, le=365),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    with Session(engine) as session:
        rows = session.scalars(
            select(TreasurySnapshot)
            .order_by(TreasurySnapshot.snapshot_date.desc())
            .limit(limit)
        ).all()
        return {
            "snapshots": [
                {
                    "snapshot_date": s.snapshot_date.isoformat(),
                    "treasury_balance": s.treasury_balance,
                    "user_balance_total": s.user_balance_total,
                    "bot_balance_total": s.bot_balance_total,
                    "coins_issued": s.coins_issued,
                    "coins_burned": s.coins_burned,
                    "expired_last_24h": s.expired_last_24h,
                    "anomaly": s.anomaly,
                }
                for s in rows
            ],
        }


# ---------------------------------------------------------------------------
# Bot actions
# ---------------------------------------------------------------------------
@router.post("/bots/actions/{action_id}/disqualify")
def disqualify_action(
    action_id: str,
    body: DisqualifyRequest,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: SweetsConfig = Depends(get_config),
):
    """Queue a refund of a bot spend for the next refund run."""
    refund_id = bot_action_service.schedule_refund(
        engine,
        action_id,
        reason=body.reason,
        refund_amount=body.refund_amount,
        refund_hour=cfg.refund_hour_utc,
        actor_id=str(admin.get("sub")),
    )
    return {"refund_id": refund_id}


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
@router.post("/jobs/{name}/run")
def run_job(
    name: str,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: SweetsConfig = Depends(get_config),
):
    """Run a scheduled job immediately in this process."""
    if name not in JOB_NAMES:
        raise HTTPException(404, detail=f"Unknown job. Must be one of: {', '.join(JOB_NAMES)}")
    cache = ConfigCache(engine)
    cache.load_all()
    jobs = build_jobs(engine, cfg, cache, build_notifier(cfg, engine))
    result = jobs[name]()
    with Session(engine) as session:
        session.add(AdminLog(
            actor_id=str(admin.get("sub")),
            action_type=AdminActionType.RUN_JOB,
            target_table="jobs",
            target_id=name,
        ))
        session.commit()
    return {"job": name, "result": result}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_all_settings(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    rows = settings_service.get_all_settings(engine)
    return {
        "settings": [
            {
                "key": r.key,
                "value": json.loads(r.value_json) if r.value_json else None,
                "category": r.category,
                "description": r.description,
                "updated_at": r.updated_at.isoformat() if r.updated_at else None,
            }
            for r in rows
        ],
    }


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    items = [
        {
            "key": s.key,
            "value": s.value,
            **({"category": s.category} if s.category else {}),
            **({"description": s.description} if s.description else {}),
        }
        for s in body
    ]
    count = settings_service.bulk_upsert(engine, items, actor_id=admin.get("sub"))
    return {"updated": count}


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    """Paginated admin audit log."""
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(AdminLog)) or 0
        rows = session.scalars(
            select(AdminLog)
            .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "entries": [
                {
                    "id": r.id,
                    "actor_id": r.actor_id,
                    "action_type": r.action_type,
                    "target_table": r.target_table,
                    "target_id": r.target_id,
                    "before_snapshot": r.before_snapshot,
                    "after_snapshot": r.after_snapshot,
                    "reason": r.reason,
                    "timestamp": r.timestamp.isoformat() if r.timestamp else None,
                }
                for r in rows
            ],
        }


# ---------------------------------------------------------------------------
# Live Logs
# ---------------------------------------------------------------------------
@router.get("/logs")
def get_live_logs(
    tail: int = Query(200, ge=1, le=5000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: dict = Depends(get_current_admin),
):
    """Return recent log entries from the in-memory ring buffer."""
    entries = get_logs(tail=tail, level=level, logger_filter=logger_filter)
    return {
        "entries": entries,
        "total": len(entries),
        "capture_level": get_current_level(),
        "valid_levels": list(VALID_LEVELS),
    }


@router.put("/logs/level")
def change_log_level(
    body: LogLevelUpdate,
    admin: dict = Depends(get_current_admin),
):
    """Change the capture level of the ring-buffer handler on-the-fly."""
    level_name = body.level.upper()
    if level_name not in VALID_LEVELS:
        raise HTTPException(400, detail=f"Invalid level. Must be one of: {', '.join(VALID_LEVELS)}")
    return {"level": set_capture_level(level_name)}
