"""
sweets.constants — Shared Constants & Helpers
==============================================

Single source of truth for system wallet identities and the idempotency
key formats used by the scheduled jobs.  Import from here instead of
building key strings inline.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# System wallets (owner_kind = "system")
# ---------------------------------------------------------------------------
TREASURY_OWNER_ID = "treasury"  # Central pool funding bot activity and rewards
MINT_OWNER_ID = "mint"          # Issuance source; the only wallet allowed below zero
BURN_OWNER_ID = "burn"          # Sink for expired coins

SYSTEM_OWNER_IDS: tuple[str, ...] = (TREASURY_OWNER_ID, MINT_OWNER_ID, BURN_OWNER_ID)

TREASURY_STATE_ID = 1  # Singleton row in treasury_state

# ---------------------------------------------------------------------------
# Human-readable reasons
# ---------------------------------------------------------------------------
EXPIRATION_REASON = "Coins expired after a period of inactivity"
REFUND_REASON = "Bot action disqualified"
GENESIS_REASON = "Initial treasury funding"

# Snapshot anomaly threshold: relative treasury balance change between days.
SNAPSHOT_ANOMALY_RATIO = 0.10


# ---------------------------------------------------------------------------
# Idempotency keys — one format per producer so retries collide
# ---------------------------------------------------------------------------
def genesis_key() -> str:
    return "treasury:genesis"


def refund_key(refund_id: str) -> str:
    """Key for the compensating transaction of a bot refund candidate."""
    return f"refund:{refund_id}"


def expiration_key(expiration_id: str) -> str:
    """Key for the debit of a coin expiration record."""
    return f"expiration:{expiration_id}"


def bot_action_key(bot_id: str, action_type: str, target_type: str, target_id: str) -> str:
    """Default key for a bot spend: one paid action per bot and target."""
    return f"bot_action:{bot_id}:{action_type}:{target_type}:{target_id}"
