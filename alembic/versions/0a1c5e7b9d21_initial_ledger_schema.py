"""Initial ledger schema: wallets, transactions, treasury, bot actions, jobs

Revision ID: 0a1c5e7b9d21
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0a1c5e7b9d21"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("owner_kind", sa.String(10), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("cap", sa.BigInteger(), nullable=True),
        sa.Column("allow_negative", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("owner_kind", "owner_id", name="uq_wallets_owner"),
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("idempotency_key", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="committed"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_ledger_transactions_key", "ledger_transactions", ["idempotency_key"], unique=True,
    )
    op.create_index(
        "ix_ledger_transactions_type_time", "ledger_transactions", ["type", "created_at"],
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "transaction_id", sa.String(36),
            sa.ForeignKey("ledger_transactions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_before", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_ledger_entries_wallet", "ledger_entries", ["wallet_id", "id"])
    op.create_index("ix_ledger_entries_transaction", "ledger_entries", ["transaction_id"])

    op.create_table(
        "treasury_state",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("daily_spend_limit", sa.BigInteger(), nullable=False, server_default="500"),
        sa.Column("today_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_refunded", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_reset_date", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "bot_actions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("bot_id", sa.String(100), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=False),
        sa.Column("coin_cost", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("idempotency_key", sa.String(200), nullable=False, unique=True),
        sa.Column(
            "transaction_id", sa.String(36),
            sa.ForeignKey("ledger_transactions.id"), nullable=True,
        ),
        sa.Column("was_refunded", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_bot_actions_bot_time", "bot_actions", ["bot_id", "created_at"])
    op.create_index("ix_bot_actions_target", "bot_actions", ["target_type", "target_id"])
    op.create_index("ix_bot_actions_transaction", "bot_actions", ["transaction_id"])

    op.create_table(
        "bot_refunds",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "bot_action_id", sa.String(36),
            sa.ForeignKey("bot_actions.id"), nullable=False, unique=True,
        ),
        sa.Column("bot_id", sa.String(100), nullable=False),
        sa.Column("original_amount", sa.BigInteger(), nullable=False),
        sa.Column("refund_amount", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "transaction_id", sa.String(36),
            sa.ForeignKey("ledger_transactions.id"), nullable=True,
        ),
        _created_at(),
    )
    op.create_index("ix_bot_refunds_due", "bot_refunds", ["status", "scheduled_for"])

    op.create_table(
        "coin_expirations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("source_transaction_id", sa.String(36), nullable=True),
        sa.Column("original_amount", sa.BigInteger(), nullable=False),
        sa.Column("expired_amount", sa.BigInteger(), nullable=False),
        sa.Column("processed_amount", sa.BigInteger(), nullable=True),
        sa.Column("scheduled_expiry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "transaction_id", sa.String(36),
            sa.ForeignKey("ledger_transactions.id"), nullable=True,
        ),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_coin_expirations_due", "coin_expirations", ["status", "scheduled_expiry_date"],
    )
    op.create_index("ix_coin_expirations_user", "coin_expirations", ["user_id"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("effective_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        _created_at(),
    )
    op.create_index(
        "ix_notification_outbox_status", "notification_outbox", ["status", "created_at"],
    )

    op.create_table(
        "treasury_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("snapshot_date", sa.Date(), nullable=False, unique=True),
        sa.Column("treasury_balance", sa.BigInteger(), nullable=False),
        sa.Column("user_balance_total", sa.BigInteger(), nullable=False),
        sa.Column("bot_balance_total", sa.BigInteger(), nullable=False),
        sa.Column("coins_issued", sa.BigInteger(), nullable=False),
        sa.Column("coins_burned", sa.BigInteger(), nullable=False),
        sa.Column("expired_last_24h", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("pending_refund_total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "pending_expiration_total", sa.BigInteger(), nullable=False, server_default="0",
        ),
        sa.Column("anomaly", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("wallets_checked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_delta", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("unbalanced_transactions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fixed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("report", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_table("admin_log")
    op.drop_table("reconciliation_runs")
    op.drop_table("treasury_snapshots")
    op.drop_table("notification_outbox")
    op.drop_table("coin_expirations")
    op.drop_table("bot_refunds")
    op.drop_table("bot_actions")
    op.drop_table("treasury_state")
    op.drop_table("ledger_entries")
    op.drop_table("ledger_transactions")
    op.drop_table("wallets")
