"""
Structured Logging: JSON Lines with Store/Key Fields

Lifecycle events (acquire, stale takeover, lost, save aborted, drain
abandoned) are emitted through StructuredLogger so each line carries the
store name and record key as top-level JSON fields.

Fields come from three places, later ones winning:
    1. StructuredLogger.context(...)   task-scoped (ContextVar)
    2. StructuredLogger.with_extra(...) bound to a logger instance
    3. keyword arguments of the call itself
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


_log_context: ContextVar[dict[str, Any]] = ContextVar("profilemesh_log_context", default={})

# Attributes every logging.LogRecord carries; anything else came from ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: @timestamp, level, logger, message, fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_log_context.get())
        payload.update(
            (name, value) for name, value in vars(record).items() if name not in _STANDARD_ATTRS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """
    Keyword-field logger over ``logging.getLogger(name)``.

    Usage:
        log = StructuredLogger("profilemesh.session").with_extra(store="players")

        with log.context(key="player_1"):
            log.info("Session acquired", version=3)
    """

    __slots__ = ("_logger", "_fields")

    def __init__(self, name: str, **fields: Any) -> None:
        self._logger = logging.getLogger(name)
        self._fields: dict[str, Any] = fields

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        self._logger.log(level, message, extra={**self._fields, **fields}, exc_info=exc_info)

    def with_extra(self, **fields: Any) -> StructuredLogger:
        """Child logger with ``fields`` attached to every line."""
        return StructuredLogger(self._logger.name, **{**self._fields, **fields})

    @staticmethod
    def context(**fields: Any) -> _LogContext:
        """Attach ``fields`` to every line logged by the current task."""
        return _LogContext(fields)


class _LogContext:
    __slots__ = ("_fields", "_token")

    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token = None

    def __enter__(self) -> _LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._fields})
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Minimum level
        json_output: JSON lines (JsonFormatter) instead of plain text
        stream: Output stream (default: stderr)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.value)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
