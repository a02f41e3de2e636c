"""
Sweets — Virtual-Currency Economy Core
=======================================
Double-entry wallet ledger for a community marketplace: user purchases and
rewards, autonomous bot agents spending from a capped treasury, and the
scheduled jobs (bot refunds, coin expiration, daily cap resets) that move
coins without a human actor present.

Package layout::

    sweets/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # System wallet ids + idempotency key builders
    ├── errors.py          # Typed failure taxonomy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, async bridge
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default settings + system wallets
    ├── engine/
    │   ├── entries.py     # Entry validation + transaction result types
    │   ├── schedule.py    # Daily run times, expiry horizons, UTC helpers
    │   └── cache.py       # In-memory settings cache
    ├── services/
    │   ├── ledger_service.py       # Idempotent multi-entry commits
    │   ├── treasury_service.py     # Central pool, daily caps, refills
    │   ├── bot_action_service.py   # Bot spend audit + refund scheduling
    │   ├── refund_service.py       # Daily refund batch
    │   ├── expiration_service.py   # Daily coin expiration batch
    │   ├── notification_service.py # Expiry notice adapters
    │   ├── reconciliation_service.py # Wallet cache vs entry drift
    │   ├── snapshot_service.py     # Daily treasury snapshot
    │   ├── settings_service.py     # Settings CRUD + audit
    │   └── log_buffer.py           # Ring buffer for live logs
    ├── worker/
    │   ├── tasks.py       # Periodic job loops
    │   └── __main__.py    # ``python -m sweets.worker``
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, config, JWT guards
        └── routes/        # Ledger, treasury, bot and admin endpoints
"""

__version__ = "0.1.0"
