"""
sweets.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings: schedule hours,
batch pacing, treasury bootstrap values and the notification endpoint.
Economy tuning that admins change at runtime (bot wallet cap, expiration
horizon, refund delay) lives in the ``settings`` table instead.

Usage::

    from sweets.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.economy_name)          # "Sweets"
    print(cfg.refund_hour_utc)       # 3
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# Economy tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SweetsConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    economy_name: str

    # API
    api_port: int

    # Treasury bootstrap
    treasury_initial_balance: int
    treasury_daily_spend_limit: int

    # Job schedule (hour of day, UTC)
    refund_hour_utc: int
    expiration_hour_utc: int
    snapshot_hour_utc: int
    daily_reset_hour_utc: int
    reconciliation_interval_hours: int

    # Batch pacing
    batch_item_delay_seconds: float
    job_max_run_seconds: float
    notification_timeout_seconds: float

    # Optional
    notification_webhook_url: str | None = None  # None → store in notification_outbox


def _hour(raw: dict, key: str) -> int:
    value = int(raw[key])
    if not 0 <= value <= 23:
        raise ValueError(f"{key} must be an hour between 0 and 23, got {value}")
    return value


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> SweetsConfig:
    """Read *path* and return a :class:`SweetsConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a schedule hour is outside 0–23.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return SweetsConfig(
        economy_name=raw["economy_name"],
        api_port=int(raw["api_port"]),
        treasury_initial_balance=int(raw["treasury_initial_balance"]),
        treasury_daily_spend_limit=int(raw["treasury_daily_spend_limit"]),
        refund_hour_utc=_hour(raw, "refund_hour_utc"),
        expiration_hour_utc=_hour(raw, "expiration_hour_utc"),
        snapshot_hour_utc=_hour(raw, "snapshot_hour_utc"),
        daily_reset_hour_utc=_hour(raw, "daily_reset_hour_utc"),
        reconciliation_interval_hours=int(raw["reconciliation_interval_hours"]),
        batch_item_delay_seconds=float(raw.get("batch_item_delay_seconds", 0.1)),
        job_max_run_seconds=float(raw.get("job_max_run_seconds", 600)),
        notification_timeout_seconds=float(raw.get("notification_timeout_seconds", 10)),
        notification_webhook_url=raw.get("notification_webhook_url") or None,
    )
