"""
sweets.services.notification_service — Expiry Notice Adapters
===============================================================

The expiration job decides *that* a user must be told about expired
coins; delivery belongs to an external collaborator.  This module holds
the message type and two adapters:

* :class:`OutboxNotifier` — writes the request to ``notification_outbox``
  for a mailer process to pick up (default).
* :class:`WebhookNotifier` — POSTs the request as JSON with ``httpx``.

:func:`dispatch` calls an adapter with a deadline so a stuck collaborator
costs one item, not the whole batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import httpx

from sweets.database.engine import get_session
from sweets.database.models import NotificationOutbox
from sweets.errors import NotificationFailed

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from sweets.config import SweetsConfig

logger = logging.getLogger(__name__)

# Small shared pool; a timed-out call keeps its thread until it returns.
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")


@dataclass(frozen=True, slots=True)
class NotificationRequest:
    user_id: str
    amount: int
    reason: str
    effective_date: datetime

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "amount": self.amount,
            "reason": self.reason,
            "effective_date": self.effective_date.isoformat(),
        }


class Notifier(Protocol):
    def send(self, request: NotificationRequest) -> None: ...


class OutboxNotifier:
    """Queue requests in the ``notification_outbox`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def send(self, request: NotificationRequest) -> None:
        with get_session(self._engine) as session:
            session.add(NotificationOutbox(
                user_id=request.user_id,
                amount=request.amount,
                reason=request.reason,
                effective_date=request.effective_date,
                status="queued",
            ))


class WebhookNotifier:
    """POST requests to an HTTP endpoint owned by the mailer service."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    def send(self, request: NotificationRequest) -> None:
        try:
            if self._client is not None:
                resp = self._client.post(self._url, json=request.to_dict(), timeout=self._timeout)
            else:
                resp = httpx.post(self._url, json=request.to_dict(), timeout=self._timeout)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise NotificationFailed(f"Webhook delivery failed: {exc}") from exc


def dispatch(notifier: Notifier, request: NotificationRequest, timeout: float = 10.0) -> None:
    """Call ``notifier.send(request)`` and wait at most *timeout* seconds.

    Raises
    ------
    NotificationFailed
        The adapter raised, or did not return in time.
    """
    future = _executor.submit(notifier.send, request)
    try:
        future.result(timeout=timeout)
    except FutureTimeout as exc:
        raise NotificationFailed(
            f"Notification for user {request.user_id} timed out after {timeout}s"
        ) from exc
    except NotificationFailed:
        raise
    except Exception as exc:
        raise NotificationFailed(f"Notification for user {request.user_id} failed: {exc}") from exc


def build_notifier(cfg: SweetsConfig, engine: Engine) -> Notifier:
    if cfg.notification_webhook_url:
        logger.info("Expiry notices → webhook %s", cfg.notification_webhook_url)
        return WebhookNotifier(cfg.notification_webhook_url, cfg.notification_timeout_seconds)
    logger.info("Expiry notices → notification_outbox table")
    return OutboxNotifier(engine)
