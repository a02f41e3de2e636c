"""
sweets.engine.entries — Entry Sets & Transaction Results
=========================================================

Pure data types and validation for the ledger.  No database access here;
:mod:`sweets.services.ledger_service` calls :func:`validate_entries` before
it locks a single row.

Rules for an entry set:

1. At least one entry.
2. Every amount is a positive ``int`` (``bool`` is rejected).
3. Every direction is ``debit`` or ``credit``.
4. ``sum(credits) == sum(debits)`` — every transaction is double-entry.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from sweets.database.models import EntryDirection
from sweets.errors import InvalidEntrySet


@dataclass(frozen=True, slots=True)
class EntrySpec:
    """One requested leg of a transaction."""

    wallet_id: int
    direction: EntryDirection
    amount: int
    memo: str | None = None

    @classmethod
    def debit(cls, wallet_id: int, amount: int, memo: str | None = None) -> EntrySpec:
        return cls(wallet_id, EntryDirection.DEBIT, amount, memo)

    @classmethod
    def credit(cls, wallet_id: int, amount: int, memo: str | None = None) -> EntrySpec:
        return cls(wallet_id, EntryDirection.CREDIT, amount, memo)

    @classmethod
    def from_dict(cls, raw: Mapping) -> EntrySpec:
        """Build from a ``{"wallet_id", "direction", "amount"}`` mapping."""
        try:
            direction = EntryDirection(raw["direction"])
        except (KeyError, ValueError) as exc:
            raise InvalidEntrySet(f"Invalid entry direction: {raw.get('direction')!r}") from exc
        if "wallet_id" not in raw or "amount" not in raw:
            raise InvalidEntrySet("Entry requires wallet_id, direction and amount")
        return cls(raw["wallet_id"], direction, raw["amount"], raw.get("memo"))

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == EntryDirection.CREDIT else -self.amount


@dataclass(frozen=True, slots=True)
class TransactionResult:
    """Outcome of a ledger commit.

    *balances* maps wallet id → balance after this transaction.
    *duplicate* is ``True`` when the idempotency key had already been
    committed and the prior result was returned without re-applying.
    """

    transaction_id: str
    transaction_type: str
    idempotency_key: str
    balances: dict[int, int] = field(default_factory=dict)
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "type": self.transaction_type,
            "idempotency_key": self.idempotency_key,
            "balances": {str(k): v for k, v in self.balances.items()},
            "duplicate": self.duplicate,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_entries(entries: Iterable[EntrySpec]) -> list[EntrySpec]:
    """Return *entries* as a list, or raise :class:`InvalidEntrySet`."""
    items = list(entries)
    if not items:
        raise InvalidEntrySet("A transaction needs at least one entry")

    credits = 0
    debits = 0
    for entry in items:
        if not isinstance(entry, EntrySpec):
            raise InvalidEntrySet(f"Not an entry: {entry!r}")
        if isinstance(entry.amount, bool) or not isinstance(entry.amount, int):
            raise InvalidEntrySet(f"Amount must be an integer, got {entry.amount!r}")
        if entry.amount <= 0:
            raise InvalidEntrySet(f"Amount must be positive, got {entry.amount}")
        if isinstance(entry.wallet_id, bool) or not isinstance(entry.wallet_id, int):
            raise InvalidEntrySet(f"Invalid wallet id: {entry.wallet_id!r}")
        if entry.direction == EntryDirection.CREDIT:
            credits += entry.amount
        elif entry.direction == EntryDirection.DEBIT:
            debits += entry.amount
        else:
            raise InvalidEntrySet(f"Invalid entry direction: {entry.direction!r}")

    if credits != debits:
        raise InvalidEntrySet(
            f"Unbalanced entry set: credits {credits} != debits {debits}"
        )
    return items


def net_deltas(entries: Iterable[EntrySpec]) -> dict[int, int]:
    """Signed balance change per wallet (credits positive)."""
    deltas: dict[int, int] = defaultdict(int)
    for entry in entries:
        deltas[entry.wallet_id] += entry.signed_amount
    return dict(deltas)


def two_leg(
    debit_wallet_id: int,
    credit_wallet_id: int,
    amount: int,
    memo: str | None = None,
) -> list[EntrySpec]:
    """The common case: move *amount* from one wallet to another."""
    return [
        EntrySpec.debit(debit_wallet_id, amount, memo),
        EntrySpec.credit(credit_wallet_id, amount, memo),
    ]
