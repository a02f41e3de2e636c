"""
sweets.services.bot_action_service — Bot Action Recorder
=========================================================

Every coin-spending action taken by an autonomous bot is written to
``bot_actions`` in the same database transaction as its treasury spend, so
an action row always points at the ledger transaction that paid for it.

Refund lifecycle::

    record_spend()       → bot_actions row (was_refunded = false)
    schedule_refund()    → bot_refunds row (pending, due at the next refund run)
    refund job           → mark_refunded() + compensating transaction

:func:`mark_refunded` is a compare-and-set ``UPDATE … WHERE was_refunded =
false``; a second call for the same action fails with
:class:`~sweets.errors.AlreadyRefunded` no matter how many refund runs
overlap.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sweets.constants import REFUND_REASON, bot_action_key
from sweets.database.engine import get_session
from sweets.database.models import AdminActionType, AdminLog, BotAction, BotRefund, RefundStatus
from sweets.engine.schedule import as_utc, refund_due_at, utcnow
from sweets.errors import AlreadyRefunded, BotActionNotFound, InvalidEntrySet
from sweets.services import treasury_service
from sweets.services.settings_service import get_setting_value

logger = logging.getLogger(__name__)


def record_spend(
    engine: Engine,
    bot_id: str,
    action_type: str,
    target_type: str,
    target_id: str,
    cost: int,
    metadata: dict | None = None,
    *,
    idempotency_key: str | None = None,
) -> str:
    """Spend *cost* treasury coins for a bot action and record it.

    The key defaults to one paid action per (bot, action type, target), so
    an orchestrator retrying the same action gets the original action id
    back instead of paying twice.  A zero *cost* records the action without
    a ledger transaction.

    Returns the action id.
    """
    if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
        raise InvalidEntrySet(f"Cost must be a non-negative integer, got {cost!r}")
    key = idempotency_key or bot_action_key(bot_id, action_type, target_type, str(target_id))

    with get_session(engine) as session:
        existing = session.scalars(
            select(BotAction).where(BotAction.idempotency_key == key)
        ).first()
        if existing is not None:
            logger.info("Bot action %s already recorded as %s", key, existing.id)
            return existing.id

        transaction_id = None
        if cost > 0:
            result = treasury_service.spend_for_bot(
                session,
                bot_id,
                cost,
                f"{action_type} {target_type}:{target_id}",
                idempotency_key=key,
                metadata={"action_type": action_type},
            )
            transaction_id = result.transaction_id

        action = BotAction(
            id=str(uuid.uuid4()),
            bot_id=bot_id,
            action_type=action_type,
            target_type=target_type,
            target_id=str(target_id),
            coin_cost=cost,
            idempotency_key=key,
            transaction_id=transaction_id,
            was_refunded=False,
            metadata_=metadata,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(action)
                session.flush()
        except IntegrityError:
            # A concurrent retry recorded the action first; its spend was
            # replayed above, so only its id is needed.
            existing = session.scalars(
                select(BotAction).where(BotAction.idempotency_key == key)
            ).first()
            if existing is None:
                raise
            logger.info("Bot action %s recorded concurrently as %s", key, existing.id)
            return existing.id
        action_id = action.id

    logger.info(
        "Bot %s %s %s:%s for %d coins (action %s)",
        bot_id, action_type, target_type, target_id, cost, action_id,
    )
    return action_id


def mark_refunded(session: Session, action_id: str, *, now: datetime | None = None) -> BotAction:
    """Atomically flip ``was_refunded`` on an action.

    Raises
    ------
    BotActionNotFound
        No action with *action_id*.
    AlreadyRefunded
        The flag was already set.
    """
    result = session.execute(
        update(BotAction)
        .where(BotAction.id == action_id, BotAction.was_refunded.is_(False))
        .values(was_refunded=True, refunded_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if session.get(BotAction, action_id) is None:
            raise BotActionNotFound(f"Bot action {action_id} not found")
        raise AlreadyRefunded(action_id)
    return session.get(BotAction, action_id, populate_existing=True)


def schedule_refund(
    engine: Engine,
    action_id: str,
    *,
    reason: str = REFUND_REASON,
    scheduled_for: datetime | None = None,
    refund_amount: int | None = None,
    refund_hour: int = 3,
    now: datetime | None = None,
    actor_id: str | None = None,
) -> str:
    """Queue a refund for a disqualified bot action.

    Due by default *economy.refund_delay_days* after today at *refund_hour*
    UTC.  Idempotent per action: a second call returns the existing refund
    id.  With *actor_id*, a ``DISQUALIFY`` audit row is written in the same
    transaction as the new refund.
    """
    with get_session(engine) as session:
        action = session.get(BotAction, action_id)
        if action is None:
            raise BotActionNotFound(f"Bot action {action_id} not found")

        existing = session.scalars(
            select(BotRefund).where(BotRefund.bot_action_id == action_id)
        ).first()
        if existing is not None:
            return existing.id

        if action.was_refunded:
            raise AlreadyRefunded(action_id)
        if action.transaction_id is None or action.coin_cost <= 0:
            raise InvalidEntrySet(f"Bot action {action_id} has no spend to refund")

        amount = action.coin_cost if refund_amount is None else refund_amount
        if not 0 < amount <= action.coin_cost:
            raise InvalidEntrySet(
                f"Refund amount must be between 1 and {action.coin_cost}, got {amount}"
            )

        if scheduled_for is None:
            delay_days = int(get_setting_value(session, "economy.refund_delay_days", 1))
            scheduled_for = refund_due_at(refund_hour, delay_days, now)

        refund = BotRefund(
            id=str(uuid.uuid4()),
            bot_action_id=action.id,
            bot_id=action.bot_id,
            original_amount=action.coin_cost,
            refund_amount=amount,
            reason=reason,
            status=RefundStatus.PENDING.value,
            scheduled_for=as_utc(scheduled_for),
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(refund)
                session.flush()
        except IntegrityError:
            # Another caller scheduled the same action first
            existing = session.scalars(
                select(BotRefund).where(BotRefund.bot_action_id == action_id)
            ).first()
            if existing is None:
                raise
            return existing.id
        refund_id = refund.id

        if actor_id is not None:
            session.add(AdminLog(
                actor_id=str(actor_id),
                action_type=AdminActionType.DISQUALIFY,
                target_table="bot_actions",
                target_id=action_id,
                after_snapshot={"refund_id": refund_id, "refund_amount": amount},
                reason=reason,
            ))

    logger.info(
        "Refund %s scheduled for action %s (%d coins, due %s)",
        refund_id, action_id, amount, scheduled_for.isoformat(),
    )
    return refund_id


def list_actions(engine: Engine, bot_id: str | None = None, limit: int = 50) -> list[dict]:
    with Session(engine) as session:
        stmt = select(BotAction).order_by(BotAction.created_at.desc()).limit(limit)
        if bot_id is not None:
            stmt = stmt.where(BotAction.bot_id == bot_id)
        return [
            {
                "id": a.id,
                "bot_id": a.bot_id,
                "action_type": a.action_type,
                "target_type": a.target_type,
                "target_id": a.target_id,
                "coin_cost": a.coin_cost,
                "transaction_id": a.transaction_id,
                "was_refunded": a.was_refunded,
                "refunded_at": a.refunded_at.isoformat() if a.refunded_at else None,
                "metadata": a.metadata_,
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in session.scalars(stmt).all()
        ]
