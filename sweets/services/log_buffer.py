"""
sweets.services.log_buffer — In-Memory Ring Buffer for Live Log Viewing
========================================================================

A thread-safe ring buffer plugged into Python's ``logging``.  Operators
tail the ledger's own log lines (declined spends, batch summaries, drift
warnings) through ``GET /api/admin/logs`` without shell access, and raise
or lower the capture level with ``PUT /api/admin/logs/level``.

Each process (API, worker) keeps its own buffer; nothing is persisted.
Audit-relevant facts live in ``admin_log`` and the ledger tables, not here.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_buffer: LogBuffer | None = None
_lock = threading.Lock()


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    level: str
    logger: str
    message: str


class LogBuffer:
    """Bounded deque of :class:`LogEntry` guarded by a lock."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_entries(
        self,
        tail: int = 200,
        level: str | None = None,
        logger_filter: str | None = None,
    ) -> list[dict[str, str]]:
        """Newest *tail* entries at or above *level* whose logger name
        starts with *logger_filter*."""
        min_level = logging.getLevelName(level.upper()) if level else 0
        if not isinstance(min_level, int):
            min_level = 0

        with self._lock:
            snapshot = list(self._entries)

        matches = [
            asdict(entry)
            for entry in snapshot
            if logging.getLevelName(entry.level) >= min_level
            and (not logger_filter or entry.logger.startswith(logger_filter))
        ]
        return matches[-tail:] if tail else matches

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RingBufferHandler(logging.Handler):
    """Logging handler that appends formatted records to a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._buffer.append(LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


def get_buffer() -> LogBuffer:
    """Return (or create) the process-global log buffer."""
    global _buffer
    if _buffer is None:
        with _lock:
            if _buffer is None:
                _buffer = LogBuffer()
    return _buffer


def _installed_handler() -> RingBufferHandler | None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RingBufferHandler):
            return handler
    return None


def install_handler(level: int = logging.INFO) -> RingBufferHandler:
    """Attach the ring-buffer handler to the root logger (once).

    Uvicorn's loggers are switched to propagate so request logs land in
    the buffer too.
    """
    handler = _installed_handler()
    if handler is None:
        handler = RingBufferHandler(get_buffer(), level=level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(logger_name).propagate = True
    return handler


def get_logs(
    tail: int = 200,
    level: str | None = None,
    logger_filter: str | None = None,
) -> list[dict[str, str]]:
    return get_buffer().get_entries(tail=tail, level=level, logger_filter=logger_filter)


def get_current_level() -> str:
    """Capture level of the installed handler (root level if none)."""
    handler = _installed_handler()
    if handler is not None:
        return logging.getLevelName(handler.level)
    return logging.getLevelName(logging.getLogger().level)


def set_capture_level(level_name: str) -> str:
    """Change the ring-buffer capture level; installs the handler if missing."""
    level_name = level_name.upper()
    if level_name not in VALID_LEVELS:
        raise ValueError(f"Invalid level: {level_name}. Must be one of {VALID_LEVELS}")
    numeric = logging.getLevelName(level_name)
    install_handler(level=numeric).setLevel(numeric)
    return level_name
