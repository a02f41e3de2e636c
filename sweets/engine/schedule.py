"""
sweets.engine.schedule — Schedule Maths
========================================

Pure helpers for the daily jobs: "next run at HH:00 UTC", refund due
dates and expiry horizons.  All datetimes handled here are timezone-aware
UTC; :func:`as_utc` normalises the naive values SQLite hands back.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; convert an aware one to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_daily_run(hour: int, now: datetime | None = None) -> datetime:
    """Next occurrence of *hour*:00 UTC strictly after *now*."""
    now = as_utc(now) or utcnow()
    candidate = datetime.combine(now.date(), time(hour=hour), tzinfo=UTC)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def seconds_until(target: datetime, now: datetime | None = None) -> float:
    now = as_utc(now) or utcnow()
    return max(0.0, (as_utc(target) - now).total_seconds())


def refund_due_at(refund_hour: int, delay_days: int = 1, now: datetime | None = None) -> datetime:
    """When a newly disqualified action should be refunded.

    *delay_days* after today, at *refund_hour* UTC.  A zero delay means the
    next refund run.
    """
    now = as_utc(now) or utcnow()
    if delay_days <= 0:
        return next_daily_run(refund_hour, now)
    day = now.date() + timedelta(days=delay_days)
    return datetime.combine(day, time(hour=refund_hour), tzinfo=UTC)


def expiry_date(granted_at: datetime, horizon_days: int) -> datetime:
    """Scheduled expiry of coins granted at *granted_at*."""
    return as_utc(granted_at) + timedelta(days=horizon_days)


def today_utc(now: datetime | None = None) -> date:
    return (as_utc(now) or utcnow()).date()
