"""
tests/test_entries.py — Entry Set Validation & Schedule Maths
==============================================================
Pure functions only; no database.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from sweets.database.models import EntryDirection
from sweets.engine.entries import (
    EntrySpec,
    TransactionResult,
    net_deltas,
    two_leg,
    validate_entries,
)
from sweets.engine.schedule import (
    as_utc,
    expiry_date,
    next_daily_run,
    refund_due_at,
    seconds_until,
)
from sweets.errors import InvalidEntrySet


class TestValidateEntries:
    def test_balanced_two_leg_accepted(self):
        items = validate_entries(two_leg(1, 2, 50))
        assert [e.direction for e in items] == [EntryDirection.DEBIT, EntryDirection.CREDIT]

    def test_multi_leg_balanced(self):
        entries = [
            EntrySpec.debit(1, 100),
            EntrySpec.credit(2, 95),
            EntrySpec.credit(3, 5),
        ]
        assert len(validate_entries(entries)) == 3

    def test_empty_rejected(self):
        with pytest.raises(InvalidEntrySet, match="at least one entry"):
            validate_entries([])

    def test_unbalanced_rejected(self):
        with pytest.raises(InvalidEntrySet, match="Unbalanced"):
            validate_entries([EntrySpec.debit(1, 10), EntrySpec.credit(2, 9)])

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True, "10"])
    def test_bad_amounts_rejected(self, amount):
        with pytest.raises(InvalidEntrySet):
            validate_entries([EntrySpec.debit(1, amount), EntrySpec.credit(2, amount)])

    def test_invalid_entry_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_entries([])


class TestEntrySpec:
    def test_from_dict(self):
        spec = EntrySpec.from_dict({"wallet_id": 7, "direction": "credit", "amount": 3})
        assert spec == EntrySpec.credit(7, 3)

    def test_from_dict_bad_direction(self):
        with pytest.raises(InvalidEntrySet, match="direction"):
            EntrySpec.from_dict({"wallet_id": 7, "direction": "sideways", "amount": 3})

    def test_from_dict_missing_amount(self):
        with pytest.raises(InvalidEntrySet):
            EntrySpec.from_dict({"wallet_id": 7, "direction": "debit"})

    def test_net_deltas_merges_legs_per_wallet(self):
        deltas = net_deltas([
            EntrySpec.debit(1, 10),
            EntrySpec.credit(2, 4),
            EntrySpec.credit(1, 6),
        ])
        assert deltas == {1: -4, 2: 4}

    def test_result_to_dict_stringifies_wallet_ids(self):
        result = TransactionResult("t-1", "reward", "k", {3: 40}, duplicate=True)
        assert result.to_dict()["balances"] == {"3": 40}
        assert result.to_dict()["duplicate"] is True


# ---------------------------------------------------------------------------
# Schedule maths
# ---------------------------------------------------------------------------
class TestSchedule:
    def test_next_daily_run_later_today(self):
        now = datetime(2026, 3, 1, 1, 30, tzinfo=UTC)
        assert next_daily_run(3, now) == datetime(2026, 3, 1, 3, 0, tzinfo=UTC)

    def test_next_daily_run_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 1, 3, 0, tzinfo=UTC)
        assert next_daily_run(3, now) == datetime(2026, 3, 2, 3, 0, tzinfo=UTC)

    def test_naive_treated_as_utc(self):
        naive = datetime(2026, 3, 1, 12, 0)
        assert as_utc(naive) == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_other_offset_converted(self):
        plus_two = datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(plus_two) == datetime(2026, 3, 1, 10, 0, tzinfo=UTC)

    def test_refund_due_next_day_at_refund_hour(self):
        now = datetime(2026, 3, 1, 18, 0, tzinfo=UTC)
        assert refund_due_at(3, 1, now) == datetime(2026, 3, 2, 3, 0, tzinfo=UTC)

    def test_refund_zero_delay_means_next_run(self):
        now = datetime(2026, 3, 1, 1, 0, tzinfo=UTC)
        assert refund_due_at(3, 0, now) == datetime(2026, 3, 1, 3, 0, tzinfo=UTC)

    def test_expiry_date_adds_horizon(self):
        granted = datetime(2026, 1, 1, tzinfo=UTC)
        assert expiry_date(granted, 90) == datetime(2026, 4, 1, tzinfo=UTC)

    def test_seconds_until_never_negative(self):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert seconds_until(now - timedelta(minutes=5), now) == 0.0
        assert seconds_until(now + timedelta(minutes=5), now) == 300.0
