"""
sweets.api.routes.treasury — Treasury read & bot spend endpoints (service JWT)
==============================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sweets.api.deps import get_current_service, get_engine
from sweets.services import treasury_service

router = APIRouter(prefix="/treasury", tags=["treasury"])


class BotSpendRequest(BaseModel):
    bot_id: str
    amount: int = Field(gt=0)
    reason: str
    idempotency_key: str | None = None
    metadata: dict | None = None


@router.get("")
def treasury_stats(
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    return treasury_service.get_treasury_stats(engine)


@router.get("/can-afford")
def can_afford(
    bot_id: str,
    amount: int = Query(..., gt=0),
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    """Advisory pre-check before a bot spend; never writes."""
    return {
        "bot_id": bot_id,
        "amount": amount,
        "can_afford": treasury_service.can_afford(engine, bot_id, amount),
    }


@router.post("/bot-spend")
def bot_spend(
    body: BotSpendRequest,
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    result = treasury_service.debit_for_bot_spend(
        engine,
        body.bot_id,
        body.amount,
        body.reason,
        idempotency_key=body.idempotency_key,
        metadata=body.metadata,
    )
    return result.to_dict()
