"""
sweets.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn sweets.api.main:app --port 8000

Ledger failures are typed (:mod:`sweets.errors`) and mapped to HTTP here,
so route handlers simply call the services and let declines propagate.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from sweets.api.deps import get_engine  # noqa: E402
from sweets.api.routes.admin import router as admin_router  # noqa: E402
from sweets.api.routes.bots import router as bots_router  # noqa: E402
from sweets.api.routes.ledger import router as ledger_router  # noqa: E402
from sweets.api.routes.treasury import router as treasury_router  # noqa: E402
from sweets.errors import (  # noqa: E402
    AlreadyRefunded,
    CapExceeded,
    InsufficientBalance,
    InvalidEntrySet,
    LedgerError,
    StoreUnavailable,
)
from sweets.services.log_buffer import install_handler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


def status_for(exc: LedgerError) -> int:
    """HTTP status for a ledger failure."""
    if isinstance(exc, InvalidEntrySet):
        return 422
    if isinstance(exc, (InsufficientBalance, CapExceeded, AlreadyRefunded)):
        return 409
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, StoreUnavailable):
        return 503
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    # Uvicorn reconfigures logging on start, so attach the buffer here.
    install_handler()
    engine = get_engine()
    logger.info("Sweets API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Sweets API shutting down")


app = FastAPI(
    title="Sweets Ledger API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content=exc.to_dict())


# Mount routers
app.include_router(ledger_router, prefix="/api")
app.include_router(treasury_router, prefix="/api")
app.include_router(bots_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
