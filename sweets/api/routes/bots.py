"""
sweets.api.routes.bots — Bot action endpoints (service JWT)
===========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sweets.api.deps import get_current_service, get_engine
from sweets.services import bot_action_service

router = APIRouter(prefix="/bots", tags=["bots"])


class RecordSpendRequest(BaseModel):
    bot_id: str
    action_type: str
    target_type: str
    target_id: str
    cost: int = Field(ge=0)
    metadata: dict | None = None
    idempotency_key: str | None = None


@router.post("/actions")
def record_action(
    body: RecordSpendRequest,
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    """Pay for a bot action from the treasury and record it."""
    action_id = bot_action_service.record_spend(
        engine,
        body.bot_id,
        body.action_type,
        body.target_type,
        body.target_id,
        body.cost,
        body.metadata,
        idempotency_key=body.idempotency_key,
    )
    return {"action_id": action_id}


@router.get("/{bot_id}/actions")
def list_bot_actions(
    bot_id: str,
    limit: int = Query(50, ge=1, le=500),
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    return {"actions": bot_action_service.list_actions(engine, bot_id, limit)}
