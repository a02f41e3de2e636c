"""
sweets.services.ledger_service — Ledger Engine
===============================================

Every balance change in the economy goes through :func:`apply_transaction`.

How a commit works:
    1. Validate the entry set (non-empty, positive integers, balanced).
    2. If the idempotency key is already committed, return the prior result
       without touching any balance.
    3. Lock every touched wallet row (``SELECT … FOR UPDATE``) in ascending
       id order, so concurrent commits on the same wallet serialize and
       commits on disjoint wallets never wait on each other.
    4. Re-read the key under the locks: a concurrent caller may have
       committed it while this one waited.
    5. Apply the per-user guards (amount ceiling, rate limit) to purchases,
       rewards and transfers.
    6. Reject the set if any wallet would end below zero (unless the caller
       allows overdraft or the wallet is the mint).
    7. Insert the header inside a SAVEPOINT, or promote a previously
       ``failed`` header with a compare-and-set.  Losing either race means a
       concurrent commit with the same key won; its result is returned.
    8. Write one entry per leg with before/after balances and update the
       cached wallet balance and lifetime counters.

:func:`apply_transaction` works inside the caller's session so that bot
actions, treasury counters and job claims commit atomically with the
ledger.  :func:`commit` is the standalone entry point: it owns a session,
and records declined attempts as ``failed`` rows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import Engine, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sweets.constants import TREASURY_OWNER_ID
from sweets.database.engine import get_session
from sweets.database.models import (
    EntryDirection,
    LedgerEntry,
    LedgerTransaction,
    OwnerKind,
    TransactionStatus,
    TransactionType,
    Wallet,
)
from sweets.engine.entries import (
    EntrySpec,
    TransactionResult,
    net_deltas,
    two_leg,
    validate_entries,
)
from sweets.engine.schedule import utcnow
from sweets.errors import (
    CapExceeded,
    InsufficientBalance,
    InvalidEntrySet,
    StoreUnavailable,
    TransactionNotFound,
    WalletNotFound,
)
from sweets.services.settings_service import get_setting_value

logger = logging.getLogger(__name__)

# Request-time flows that carry the per-user guards.  Bot spends have their
# own caps; jobs and admin adjustments are exempt.
GUARDED_TYPES = frozenset({
    TransactionType.PURCHASE,
    TransactionType.REWARD,
    TransactionType.TRANSFER,
})
RATE_WINDOW = timedelta(minutes=1)


# ---------------------------------------------------------------------------
# Wallet lookup
# ---------------------------------------------------------------------------
def get_wallet(session: Session, owner_kind: str, owner_id: str) -> Wallet | None:
    return session.scalars(
        select(Wallet).where(
            Wallet.owner_kind == str(owner_kind),
            Wallet.owner_id == str(owner_id),
        )
    ).first()


def get_or_create_wallet(
    session: Session,
    owner_kind: str,
    owner_id: str,
    *,
    cap: int | None = None,
    allow_negative: bool = False,
) -> Wallet:
    """Return the wallet for ``(owner_kind, owner_id)``, creating it if needed.

    Creation runs inside a SAVEPOINT; if a concurrent request created the
    same wallet first, the unique constraint fires and the existing row is
    returned instead.
    """
    wallet = get_wallet(session, owner_kind, owner_id)
    if wallet is not None:
        return wallet

    wallet = Wallet(
        owner_kind=str(owner_kind),
        owner_id=str(owner_id),
        balance=0,
        lifetime_earned=0,
        lifetime_spent=0,
        cap=cap,
        allow_negative=allow_negative,
        version=0,
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(wallet)
            session.flush()
    except IntegrityError:
        wallet = get_wallet(session, owner_kind, owner_id)
        if wallet is None:
            raise
        return wallet

    logger.info("Wallet created: %s:%s (id=%d)", owner_kind, owner_id, wallet.id)
    return wallet


def system_wallet(session: Session, owner_id: str = TREASURY_OWNER_ID) -> Wallet:
    """Return a seeded system wallet (treasury, mint or burn)."""
    wallet = get_wallet(session, OwnerKind.SYSTEM, owner_id)
    if wallet is None:
        raise WalletNotFound(
            f"System wallet {owner_id!r} does not exist; run init_db first"
        )
    return wallet


def lock_wallets(session: Session, wallet_ids: Iterable[int]) -> dict[int, Wallet]:
    """Lock *wallet_ids* ``FOR UPDATE`` in ascending id order.

    Rows are re-read (``populate_existing``) so balances reflect the latest
    committed value even if the session had loaded them earlier.
    """
    ids = sorted(set(wallet_ids))
    rows = session.scalars(
        select(Wallet)
        .where(Wallet.id.in_(ids))
        .order_by(Wallet.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    wallets = {w.id: w for w in rows}
    missing = [wid for wid in ids if wid not in wallets]
    if missing:
        raise WalletNotFound(f"Wallet(s) not found: {missing}")
    return wallets


def entry_sum(session: Session, wallet_id: int) -> int:
    """Signed sum of committed entries for *wallet_id* (credits positive)."""
    signed = case(
        (LedgerEntry.direction == EntryDirection.CREDIT.value, LedgerEntry.amount),
        else_=-LedgerEntry.amount,
    )
    total = session.scalar(
        select(func.coalesce(func.sum(signed), 0))
        .join(LedgerTransaction, LedgerTransaction.id == LedgerEntry.transaction_id)
        .where(
            LedgerEntry.wallet_id == wallet_id,
            LedgerTransaction.status == TransactionStatus.COMMITTED.value,
        )
    )
    return int(total or 0)


# ---------------------------------------------------------------------------
# Transaction lookup
# ---------------------------------------------------------------------------
def find_by_key(
    session: Session, idempotency_key: str, *, refresh: bool = False,
) -> LedgerTransaction | None:
    """Header for *idempotency_key*; *refresh* overwrites a stale loaded copy."""
    stmt = select(LedgerTransaction).where(
        LedgerTransaction.idempotency_key == idempotency_key
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return session.scalars(stmt).first()


def result_for(session: Session, txn: LedgerTransaction, *, duplicate: bool) -> TransactionResult:
    """Rebuild the result of a committed transaction from its entries."""
    rows = session.scalars(
        select(LedgerEntry)
        .where(LedgerEntry.transaction_id == txn.id)
        .order_by(LedgerEntry.id)
    ).all()
    balances: dict[int, int] = {}
    for row in rows:
        balances[row.wallet_id] = row.balance_after
    return TransactionResult(
        transaction_id=txn.id,
        transaction_type=txn.type,
        idempotency_key=txn.idempotency_key,
        balances=balances,
        duplicate=duplicate,
    )


def find_committed(session: Session, idempotency_key: str) -> TransactionResult | None:
    """Prior result for *idempotency_key*, or ``None`` if not yet committed."""
    txn = find_by_key(session, idempotency_key)
    if txn is None or txn.status != TransactionStatus.COMMITTED:
        return None
    return result_for(session, txn, duplicate=True)


# ---------------------------------------------------------------------------
# Per-user guards
# ---------------------------------------------------------------------------
def _acting_users(items: Sequence[EntrySpec], wallets: dict[int, Wallet]) -> list[int]:
    """User wallets paying in *items*, or the payees when no user pays."""
    deltas = net_deltas(items)
    users = [wid for wid in sorted(deltas) if wallets[wid].owner_kind == OwnerKind.USER]
    payers = [wid for wid in users if deltas[wid] < 0]
    return payers or [wid for wid in users if deltas[wid] > 0]


def recent_transaction_count(session: Session, wallet_id: int, since: datetime) -> int:
    """Committed guarded transactions touching *wallet_id* since *since*."""
    return int(session.scalar(
        select(func.count(func.distinct(LedgerEntry.transaction_id)))
        .join(LedgerTransaction, LedgerTransaction.id == LedgerEntry.transaction_id)
        .where(
            LedgerEntry.wallet_id == wallet_id,
            LedgerTransaction.status == TransactionStatus.COMMITTED.value,
            LedgerTransaction.type.in_([t.value for t in GUARDED_TYPES]),
            LedgerTransaction.created_at >= since,
        )
    ) or 0)


def check_user_limits(
    session: Session,
    transaction_type: TransactionType,
    items: Sequence[EntrySpec],
    wallets: dict[int, Wallet],
    *,
    now: datetime | None = None,
) -> None:
    """Fraud guards for purchases, rewards and transfers.

    ``economy.max_transaction_amount`` caps the coins one transaction may
    move and ``economy.max_transactions_per_minute`` caps how often the
    acting user may transact.  A setting of ``0`` disables its guard.

    Raises
    ------
    CapExceeded
        Scope ``"transaction_amount"`` or ``"rate"``.
    """
    if transaction_type not in GUARDED_TYPES:
        return
    acting = _acting_users(items, wallets)
    if not acting:
        return

    volume = sum(spec.amount for spec in items if spec.signed_amount > 0)
    max_amount = int(get_setting_value(session, "economy.max_transaction_amount", 1000) or 0)
    if max_amount and volume > max_amount:
        raise CapExceeded("transaction_amount", max_amount, 0, volume)

    per_minute = int(get_setting_value(session, "economy.max_transactions_per_minute", 10) or 0)
    if not per_minute:
        return
    since = (now or utcnow()) - RATE_WINDOW
    for wallet_id in acting:
        recent = recent_transaction_count(session, wallet_id, since)
        if recent >= per_minute:
            raise CapExceeded("rate", per_minute, recent, 1)


# ---------------------------------------------------------------------------
# The engine
# ---------------------------------------------------------------------------
def _promote_failed(
    session: Session,
    prior: LedgerTransaction,
    transaction_type: TransactionType,
    metadata: dict | None,
) -> bool:
    """Compare-and-set a declined header to ``committed``.

    Returns ``False`` when a concurrent retry promoted it first.
    """
    result = session.execute(
        update(LedgerTransaction)
        .where(
            LedgerTransaction.id == prior.id,
            LedgerTransaction.status == TransactionStatus.FAILED.value,
        )
        .values({
            LedgerTransaction.type: transaction_type.value,
            LedgerTransaction.status: TransactionStatus.COMMITTED.value,
            LedgerTransaction.failure_reason: None,
            LedgerTransaction.metadata_: metadata,
        })
        .execution_options(synchronize_session=False)
    )
    session.refresh(prior)
    return result.rowcount == 1


def apply_transaction(
    session: Session,
    transaction_type: str,
    idempotency_key: str,
    entries: Sequence[EntrySpec],
    metadata: dict | None = None,
    *,
    allow_overdraft: bool = False,
) -> TransactionResult:
    """Apply a balanced entry set inside *session*.

    Does not commit; the caller's transaction boundary decides.

    Raises
    ------
    InvalidEntrySet
        Empty, malformed or unbalanced entries, or an unknown type.
    WalletNotFound
        An entry references a wallet that does not exist.
    InsufficientBalance
        A wallet would end below zero and overdraft is not allowed.
    CapExceeded
        A per-user guard rejected a purchase, reward or transfer.
    """
    if not idempotency_key or not str(idempotency_key).strip():
        raise InvalidEntrySet("An idempotency key is required")
    try:
        txn_type = TransactionType(transaction_type)
    except ValueError as exc:
        raise InvalidEntrySet(f"Unknown transaction type: {transaction_type!r}") from exc
    items = validate_entries(entries)

    prior = find_by_key(session, idempotency_key)
    if prior is not None and prior.status == TransactionStatus.COMMITTED:
        logger.info(
            "Duplicate commit for key %s → returning transaction %s",
            idempotency_key, prior.id,
        )
        return result_for(session, prior, duplicate=True)

    wallets = lock_wallets(session, (e.wallet_id for e in items))

    prior = find_by_key(session, idempotency_key, refresh=True)
    if prior is not None and prior.status == TransactionStatus.COMMITTED:
        logger.info(
            "Key %s committed while waiting for wallet locks → returning transaction %s",
            idempotency_key, prior.id,
        )
        return result_for(session, prior, duplicate=True)

    check_user_limits(session, txn_type, items, wallets)

    for wallet_id, delta in net_deltas(items).items():
        wallet = wallets[wallet_id]
        if delta >= 0 or allow_overdraft or wallet.allow_negative:
            continue
        if wallet.balance + delta < 0:
            raise InsufficientBalance(wallet_id, wallet.balance, -delta)

    if prior is not None:
        # A previously declined attempt with this key
        if not _promote_failed(session, prior, txn_type, metadata):
            logger.info("Concurrent retry for key %s already committed", idempotency_key)
            return result_for(session, prior, duplicate=True)
        txn = prior
    else:
        txn = LedgerTransaction(
            id=str(uuid.uuid4()),
            type=txn_type.value,
            idempotency_key=idempotency_key,
            status=TransactionStatus.COMMITTED.value,
            metadata_=metadata,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(txn)
                session.flush()
        except IntegrityError:
            # A concurrent commit with the same key won the race.
            winner = find_by_key(session, idempotency_key)
            if winner is None or winner.status != TransactionStatus.COMMITTED:
                raise
            logger.info("Concurrent duplicate for key %s", idempotency_key)
            return result_for(session, winner, duplicate=True)

    balances: dict[int, int] = {}
    for spec in items:
        wallet = wallets[spec.wallet_id]
        direction = EntryDirection(spec.direction)
        before = wallet.balance
        after = before + spec.signed_amount
        session.add(LedgerEntry(
            transaction_id=txn.id,
            wallet_id=wallet.id,
            direction=direction.value,
            amount=spec.amount,
            balance_before=before,
            balance_after=after,
            memo=spec.memo,
        ))
        wallet.balance = after
        if direction == EntryDirection.CREDIT:
            wallet.lifetime_earned += spec.amount
        else:
            wallet.lifetime_spent += spec.amount
        wallet.version += 1
        balances[wallet.id] = after
    session.flush()

    logger.info(
        "Committed %s transaction %s (key=%s, legs=%d)",
        txn_type.value, txn.id, idempotency_key, len(items),
    )
    return TransactionResult(
        transaction_id=txn.id,
        transaction_type=txn_type.value,
        idempotency_key=idempotency_key,
        balances=balances,
        duplicate=False,
    )


def commit(
    engine: Engine,
    transaction_type: str,
    idempotency_key: str,
    entries: Sequence[EntrySpec],
    metadata: dict | None = None,
    *,
    allow_overdraft: bool = False,
) -> TransactionResult:
    """Apply a transaction in its own database transaction.

    Declined attempts (insufficient balance, unknown wallet) are stored as
    ``failed`` rows under the same key, then the typed error is re-raised.
    A later retry with that key is attempted again normally.
    """
    try:
        with get_session(engine) as session:
            return apply_transaction(
                session,
                transaction_type,
                idempotency_key,
                entries,
                metadata,
                allow_overdraft=allow_overdraft,
            )
    except (InsufficientBalance, WalletNotFound) as exc:
        logger.warning("Transaction declined (key=%s): %s", idempotency_key, exc)
        _record_failure(engine, transaction_type, idempotency_key, metadata, str(exc))
        raise


def _record_failure(
    engine: Engine,
    transaction_type: str,
    idempotency_key: str,
    metadata: dict | None,
    reason: str,
) -> None:
    try:
        with get_session(engine) as session:
            existing = find_by_key(session, idempotency_key)
            if existing is None:
                session.add(LedgerTransaction(
                    id=str(uuid.uuid4()),
                    type=str(transaction_type),
                    idempotency_key=idempotency_key,
                    status=TransactionStatus.FAILED.value,
                    failure_reason=reason,
                    metadata_=metadata,
                ))
            elif existing.status == TransactionStatus.FAILED:
                existing.failure_reason = reason
    except IntegrityError:
        logger.info("Failure record for key %s already written", idempotency_key)
    except StoreUnavailable:
        logger.warning("Could not record failed transaction %s", idempotency_key)


# ---------------------------------------------------------------------------
# Convenience flows for the surrounding application
# ---------------------------------------------------------------------------
def grant_reward(
    engine: Engine,
    user_id: str,
    amount: int,
    idempotency_key: str,
    reason: str,
    *,
    metadata: dict | None = None,
) -> TransactionResult:
    """Pay *amount* from the treasury to a user (forum rewards, bonuses)."""
    with get_session(engine) as session:
        treasury = system_wallet(session)
        user = get_or_create_wallet(session, OwnerKind.USER, user_id)
        return apply_transaction(
            session,
            TransactionType.REWARD,
            idempotency_key,
            two_leg(treasury.id, user.id, amount, memo=reason),
            {"reason": reason, **(metadata or {})},
        )


def transfer(
    engine: Engine,
    from_owner: tuple[str, str],
    to_owner: tuple[str, str],
    amount: int,
    idempotency_key: str,
    *,
    transaction_type: str = TransactionType.PURCHASE,
    metadata: dict | None = None,
) -> TransactionResult:
    """Move *amount* between two owners, e.g. a marketplace purchase.

    Owners are ``(owner_kind, owner_id)`` tuples.  The payer must already
    have a wallet; the payee's wallet is created on first use.
    """
    with get_session(engine) as session:
        payer = get_wallet(session, *from_owner)
        if payer is None:
            raise WalletNotFound(f"No wallet for {from_owner[0]}:{from_owner[1]}")
        payee = get_or_create_wallet(session, *to_owner)
        return apply_transaction(
            session,
            transaction_type,
            idempotency_key,
            two_leg(payer.id, payee.id, amount),
            metadata,
        )


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------
def wallet_dict(wallet: Wallet) -> dict:
    return {
        "id": wallet.id,
        "owner_kind": wallet.owner_kind,
        "owner_id": wallet.owner_id,
        "balance": wallet.balance,
        "lifetime_earned": wallet.lifetime_earned,
        "lifetime_spent": wallet.lifetime_spent,
        "cap": wallet.cap,
    }


def get_wallet_summary(engine: Engine, owner_kind: str, owner_id: str) -> dict:
    with Session(engine) as session:
        wallet = get_wallet(session, owner_kind, owner_id)
        if wallet is None:
            raise WalletNotFound(f"No wallet for {owner_kind}:{owner_id}")
        return wallet_dict(wallet)


def list_entries(engine: Engine, wallet_id: int, limit: int = 50) -> list[dict]:
    """Most recent committed entries for a wallet, newest first."""
    with Session(engine) as session:
        rows = session.execute(
            select(LedgerEntry, LedgerTransaction.type, LedgerTransaction.created_at)
            .join(LedgerTransaction, LedgerTransaction.id == LedgerEntry.transaction_id)
            .where(
                LedgerEntry.wallet_id == wallet_id,
                LedgerTransaction.status == TransactionStatus.COMMITTED.value,
            )
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "transaction_id": entry.transaction_id,
                "type": txn_type,
                "direction": entry.direction,
                "amount": entry.amount,
                "balance_before": entry.balance_before,
                "balance_after": entry.balance_after,
                "memo": entry.memo,
                "created_at": created_at.isoformat() if created_at else None,
            }
            for entry, txn_type, created_at in rows
        ]


def get_transaction(engine: Engine, transaction_id: str) -> dict:
    with Session(engine) as session:
        txn = session.get(LedgerTransaction, transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return {
            "id": txn.id,
            "type": txn.type,
            "idempotency_key": txn.idempotency_key,
            "status": txn.status,
            "failure_reason": txn.failure_reason,
            "metadata": txn.metadata_,
            "created_at": txn.created_at.isoformat() if txn.created_at else None,
            "entries": [
                {
                    "wallet_id": e.wallet_id,
                    "direction": e.direction,
                    "amount": e.amount,
                    "balance_before": e.balance_before,
                    "balance_after": e.balance_after,
                    "memo": e.memo,
                }
                for e in txn.entries
            ],
        }
