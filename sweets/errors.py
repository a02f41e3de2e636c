"""
sweets.errors — Ledger Failure Taxonomy
========================================

Typed failures raised by the ledger core.  Declined financial actions
(:class:`InsufficientBalance`, :class:`InvalidEntrySet`,
:class:`CapExceeded`, :class:`AlreadyRefunded`) are returned to the caller
synchronously; :class:`StoreUnavailable` marks transient infrastructure
trouble; :class:`NotificationFailed` is logged and never reverses a debit.

The API layer maps every :class:`LedgerError` to an HTTP status in
:mod:`sweets.api.main`.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger-core failures."""

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": str(self)}


class InsufficientBalance(LedgerError):
    """A debit would take a wallet below zero and overdraft is not allowed."""

    def __init__(self, wallet_id: int, balance: int, required: int) -> None:
        self.wallet_id = wallet_id
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient balance in wallet {wallet_id}: "
            f"has {balance}, needs {required}"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "wallet_id": self.wallet_id,
            "balance": self.balance,
            "required": self.required,
        }


class InvalidEntrySet(LedgerError, ValueError):
    """Entries are empty, malformed, or do not balance."""


class AlreadyRefunded(LedgerError):
    """The bot action has already been refunded."""

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Bot action {action_id} was already refunded")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "action_id": self.action_id}


class CapExceeded(LedgerError):
    """A spend ceiling would be exceeded.

    *scope* is ``"bot_wallet"`` or ``"treasury_daily"`` for bot spends, and
    ``"transaction_amount"`` or ``"rate"`` for the per-user guards.
    """

    def __init__(self, scope: str, limit: int, current: int, requested: int) -> None:
        self.scope = scope
        self.limit = limit
        self.current = current
        self.requested = requested
        super().__init__(
            f"{scope} cap exceeded: limit {limit}, current {current}, "
            f"requested {requested}"
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "scope": self.scope,
            "limit": self.limit,
            "current": self.current,
            "requested": self.requested,
        }


class StoreUnavailable(LedgerError):
    """The database could not be reached or timed out."""


class NotificationFailed(LedgerError):
    """The notification collaborator rejected or timed out on a request."""


class WalletNotFound(LedgerError, LookupError):
    """No wallet exists for the given id or owner."""


class BotActionNotFound(LedgerError, LookupError):
    """No bot action exists for the given id."""


class TransactionNotFound(LedgerError, LookupError):
    """No ledger transaction exists for the given id."""
