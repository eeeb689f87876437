"""Structured logging configuration with session correlation."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from postgres_uow.core.config import get_config

SESSION_ID_FIELD = "session_id"

_current_session_id: ContextVar[str | None] = ContextVar("uow_session_id", default=None)


class JSONFormatter(logging.Formatter):
    """Render log records as JSON objects."""

    extra_keys = ("observer", "hook", "state", "elapsed_ms")

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            SESSION_ID_FIELD: getattr(record, SESSION_ID_FIELD, None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key in self.extra_keys:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        return json.dumps(payload, default=str)


class SessionIdFilter(logging.Filter):
    """Ensure a ``session_id`` attribute is always present on log records.

    Records logged with an explicit ``extra={"session_id": ...}`` keep their
    value; otherwise the id bound by :func:`bind_session_id` (if any) is used.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, SESSION_ID_FIELD, None) is None:
            setattr(record, SESSION_ID_FIELD, current_session_id())
        return True


def current_session_id() -> str | None:
    """Return the session id bound to the running context, if any."""

    return _current_session_id.get()


@contextmanager
def bind_session_id(session_id: str) -> Iterator[None]:
    """Bind ``session_id`` to every record logged inside the block.

    Observer hooks run inside this block while a session finalizes, so their
    own log lines correlate with the session without extra plumbing.
    """

    token = _current_session_id.set(session_id)
    try:
        yield
    finally:
        _current_session_id.reset(token)


def configure_logging(level: str | int | None = None) -> None:
    """Configure the root logger with JSON-formatted stdout output.

    :param level: Root level; defaults to ``LOG_LEVEL`` of :func:`get_config`.
    """
    if level is None:
        level = get_config().LOG_LEVEL

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(SessionIdFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    level_value: int | str = level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level_value = resolved if isinstance(resolved, int) else level.upper()
    root.setLevel(level_value)


__all__ = [
    "JSONFormatter",
    "SessionIdFilter",
    "bind_session_id",
    "configure_logging",
    "current_session_id",
]
