"""Logging setup for PatchWarden.

Two output shapes share the same context fields:
  - JSON lines for staging/production, one object per record
  - a compact colored line for local development

Context (session, task, review stage, file) travels on records via
``extra=`` or is stamped by :class:`SessionLogFilter`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

CONTEXT_FIELDS = ("session_id", "task_id", "stage", "file_path", "strategy", "duration_ms")

_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "asyncio")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields present (and non-empty) on *record*."""
    context: dict[str, Any] = {}
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value not in (None, ""):
            context[key] = value
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(record_context(record))

        if record.exc_info and record.exc_info[1] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
            code = getattr(exc, "code", None)
            if code is not None:
                entry["exception"]["code"] = str(code)

        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger [session/stage] message`` for terminals."""

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def _level(self, record: logging.LogRecord) -> str:
        label = f"{record.levelname:<7s}"
        if not self.use_color:
            return label
        return f"{_LEVEL_COLORS.get(record.levelno, '')}{label}{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        context = record_context(record)
        tag = "/".join(str(context[k])[:12] for k in ("session_id", "stage") if k in context)

        line = f"{ts} {self._level(record)} {record.name}"
        if tag:
            line += f" [{tag}]"
        line += f" {record.getMessage()}"
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(env: str = "development", log_level: str = "INFO", stream: IO[str] | None = None) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        env: Application environment; staging and production log JSON.
        log_level: Minimum level name, unknown names fall back to INFO.
        stream: Destination, stderr when omitted so stdout stays clean for reports.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    target = stream or sys.stderr
    handler = logging.StreamHandler(target)
    if env in ("staging", "production"):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(DevFormatter(use_color=bool(getattr(target, "isatty", lambda: False)())))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


class SessionLogFilter(logging.Filter):
    """Stamps the session and task on records that do not carry their own."""

    def __init__(self, session_id: str = "", task_id: str = "") -> None:
        super().__init__()
        self.session_id = session_id
        self.task_id = task_id

    def filter(self, record: logging.LogRecord) -> bool:
        if self.session_id and not getattr(record, "session_id", None):
            record.session_id = self.session_id  # type: ignore[attr-defined]
        if self.task_id and not getattr(record, "task_id", None):
            record.task_id = self.task_id  # type: ignore[attr-defined]
        return True
