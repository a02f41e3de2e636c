"""
sweets.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- wallets              — One balance-holding account per user, bot or system owner
- ledger_transactions  — Atomic, idempotent transaction headers
- ledger_entries       — Debit/credit legs with before/after balances
- treasury_state       — Singleton row: daily spend counter and caps
- bot_actions          — Audit trail of every coin-spending bot action
- bot_refunds          — Refund candidates for disqualified bot actions
- coin_expirations     — Scheduled forced debits of dormant balances
- notification_outbox  — Expiry notices queued for the external notifier
- treasury_snapshots   — One economy snapshot per day
- reconciliation_runs  — Results of the weekly wallet drift check
- settings             — Key/value economy tuning (JSON values)
- admin_log            — Append-only audit trail of admin mutations

Wallet ``balance`` is a cache of the signed sum of its ledger entries; it is
only ever written by :mod:`sweets.services.ledger_service` (and corrected
by the reconciliation job).
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Sweets ORM models."""


# ---------------------------------------------------------------------------
# Enums (stored as plain strings)
# ---------------------------------------------------------------------------
class OwnerKind(enum.StrEnum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class EntryDirection(enum.StrEnum):
    DEBIT = "debit"
    CREDIT = "credit"


class TransactionType(enum.StrEnum):
    """Type tag of a ledger transaction."""
    PURCHASE = "purchase"
    REWARD = "reward"
    BOT_SPEND = "bot_spend"
    REFUND = "refund"
    EXPIRATION = "expiration"
    TREASURY_REFILL = "treasury_refill"
    PLATFORM_FEE = "platform_fee"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


class TransactionStatus(enum.StrEnum):
    COMMITTED = "committed"
    FAILED = "failed"


class RefundStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class ExpirationStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    REFILL = "REFILL"
    DRAIN = "DRAIN"
    DISQUALIFY = "DISQUALIFY"
    RUN_JOB = "RUN_JOB"


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------
class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cap: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # Bot ceiling override
    allow_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    entries: Mapped[list[LedgerEntry]] = relationship(back_populates="wallet")

    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_id", name="uq_wallets_owner"),
    )

    def __repr__(self) -> str:
        return f"<Wallet id={self.id} {self.owner_kind}:{self.owner_id} balance={self.balance}>"


# ---------------------------------------------------------------------------
# Ledger — transaction headers and entry legs
# ---------------------------------------------------------------------------
class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.COMMITTED
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    entries: Mapped[list[LedgerEntry]] = relationship(
        back_populates="transaction", order_by="LedgerEntry.id"
    )

    __table_args__ = (
        Index("ix_ledger_transactions_key", "idempotency_key", unique=True),
        Index("ix_ledger_transactions_type_time", "type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction id={self.id} type={self.type} status={self.status}>"


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id", ondelete="CASCADE"), nullable=False
    )
    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    transaction: Mapped[LedgerTransaction] = relationship(back_populates="entries")
    wallet: Mapped[Wallet] = relationship(back_populates="entries")

    __table_args__ = (
        Index("ix_ledger_entries_wallet", "wallet_id", "id"),
        Index("ix_ledger_entries_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry wallet={self.wallet_id} {self.direction} "
            f"{self.amount} txn={self.transaction_id}>"
        )


# ---------------------------------------------------------------------------
# Treasury — singleton state row next to the treasury wallet
# ---------------------------------------------------------------------------
class TreasuryState(Base):
    __tablename__ = "treasury_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wallets.id"), nullable=False
    )
    daily_spend_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=500)
    today_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_reset_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<TreasuryState today_spent={self.today_spent} "
            f"limit={self.daily_spend_limit}>"
        )


# ---------------------------------------------------------------------------
# Bot actions and refunds
# ---------------------------------------------------------------------------
class BotAction(Base):
    __tablename__ = "bot_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    bot_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(100), nullable=False)
    coin_cost: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id"), nullable=True
    )
    was_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_bot_actions_bot_time", "bot_id", "created_at"),
        Index("ix_bot_actions_target", "target_type", "target_id"),
        Index("ix_bot_actions_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<BotAction id={self.id} bot={self.bot_id} cost={self.coin_cost}>"


class BotRefund(Base):
    __tablename__ = "bot_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    bot_action_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bot_actions.id"), nullable=False, unique=True
    )
    bot_id: Mapped[str] = mapped_column(String(100), nullable=False)
    original_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refund_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.PENDING
    )
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_bot_refunds_due", "status", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return f"<BotRefund id={self.id} action={self.bot_action_id} status={self.status}>"


# ---------------------------------------------------------------------------
# Coin expirations and the notification outbox
# ---------------------------------------------------------------------------
class CoinExpiration(Base):
    __tablename__ = "coin_expirations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source_transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    original_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expired_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    scheduled_expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    actual_expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExpirationStatus.PENDING
    )
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id"), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_coin_expirations_due", "status", "scheduled_expiry_date"),
        Index("ix_coin_expirations_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CoinExpiration id={self.id} user={self.user_id} "
            f"amount={self.expired_amount} status={self.status}>"
        )


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notification_outbox_status", "status", "created_at"),
    )


# ---------------------------------------------------------------------------
# Reporting — daily snapshots and reconciliation runs
# ---------------------------------------------------------------------------
class TreasurySnapshot(Base):
    __tablename__ = "treasury_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    treasury_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_balance_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    bot_balance_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    coins_issued: Mapped[int] = mapped_column(BigInteger, nullable=False)
    coins_burned: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expired_last_24h: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_refund_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending_expiration_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    anomaly: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<TreasurySnapshot date={self.snapshot_date} anomaly={self.anomaly}>"


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # ok | drift
    wallets_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    drift_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_delta: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unbalanced_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fixed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    report: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# Settings — key/value economy tuning
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Economy knobs (bot wallet cap, expiration horizon, refund delay) live
    here so admins can adjust them without redeploying.  Values are stored
    as JSON strings; typed accessors live in
    :class:`~sweets.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
