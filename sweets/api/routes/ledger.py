"""
sweets.api.routes.ledger — Transaction & wallet endpoints (service JWT)
=======================================================================
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sweets.api.deps import get_current_service, get_engine
from sweets.database.models import OwnerKind
from sweets.engine.entries import EntrySpec
from sweets.services import ledger_service

router = APIRouter(tags=["ledger"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EntryIn(BaseModel):
    wallet_id: int
    direction: Literal["debit", "credit"]
    amount: int
    memo: str | None = None


class CommitRequest(BaseModel):
    type: str
    idempotency_key: str = Field(min_length=1, max_length=200)
    entries: list[EntryIn]
    metadata: dict | None = None
    allow_overdraft: bool = False


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
@router.post("/ledger/transactions")
def commit_transaction(
    body: CommitRequest,
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    """Apply a balanced, idempotent multi-entry transaction.

    Replaying a committed key returns the original result with
    ``duplicate: true``.
    """
    entries = [EntrySpec.from_dict(e.model_dump()) for e in body.entries]
    result = ledger_service.commit(
        engine,
        body.type,
        body.idempotency_key,
        entries,
        body.metadata,
        allow_overdraft=body.allow_overdraft,
    )
    return result.to_dict()


@router.get("/ledger/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    return ledger_service.get_transaction(engine, transaction_id)


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------
@router.get("/wallets/{owner_kind}/{owner_id}")
def get_wallet(
    owner_kind: OwnerKind,
    owner_id: str,
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    return ledger_service.get_wallet_summary(engine, owner_kind, owner_id)


@router.get("/wallets/{owner_kind}/{owner_id}/entries")
def get_wallet_entries(
    owner_kind: OwnerKind,
    owner_id: str,
    limit: int = Query(50, ge=1, le=500),
    caller: dict = Depends(get_current_service),
    engine=Depends(get_engine),
):
    wallet = ledger_service.get_wallet_summary(engine, owner_kind, owner_id)
    return {
        "wallet": wallet,
        "entries": ledger_service.list_entries(engine, wallet["id"], limit),
    }
