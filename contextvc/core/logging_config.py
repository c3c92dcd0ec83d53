"""Structured logging configuration for ContextVC.

JSON lines in production, human-readable text in development. The
request id set by the request context middleware is attached to every
record emitted while that request is being handled.

Engine and sync code identify what a record is about through a fixed set
of ``extra`` keys (``CONTEXT_KEYS``). Both formatters surface them in the
same order so one owner's commits can be followed across requests:

    logger.info("Commit created", extra={"owner_id": owner_id, "version_id": vid})
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional


request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

CONTEXT_KEYS = ("owner_id", "version_id", "parent_id", "target_version_id", "source")

_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())


def _context_of(record: logging.LogRecord) -> dict:
    """Request id and the standard context keys present on *record*, in order."""
    context = {}
    rid = request_id_var.get("")
    if rid:
        context["request_id"] = rid
    for key in CONTEXT_KEYS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single JSON line.

    The standard context keys follow the message in ``CONTEXT_KEYS``
    order; any other ``extra`` fields come after them.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context_of(record))

        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in payload:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class _TextFormatter(logging.Formatter):
    """Plain text line with the standard context keys appended as ``[k=v ...]``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = _context_of(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SECRET_PATTERNS = [
    re.compile(r'(://[^:/\s]+:)[^@\s]+(@)'),             # passwords in DB URLs
    re.compile(r'(?i)(bearer\s+)[a-zA-Z0-9._\-]{20,}'),  # Bearer tokens
    re.compile(
        r'(?i)((?:api_key|secret|password|token|authorization)[=:]\s*)[^\s,\'"]{8,}'
    ),
]

_REDACTED = "***REDACTED***"


class _SecretFilter(logging.Filter):
    """Redact credentials from log messages, their arguments and exception text.

    Sync connectors log upstream errors as ``%s`` arguments, so string-like
    arguments are redacted as well as the format string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(self._redact_arg(arg) for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: self._redact_arg(arg) for key, arg in record.args.items()}
        if record.exc_text:
            record.exc_text = self._redact(record.exc_text)
        return True

    @classmethod
    def _redact_arg(cls, arg):
        if isinstance(arg, (str, Exception)):
            return cls._redact(str(arg))
        return arg

    @staticmethod
    def _redact(text: str) -> str:
        for pattern in _SECRET_PATTERNS:
            text = pattern.sub(_replacement, text)
        return text


def _replacement(match: re.Match) -> str:
    if match.lastindex == 2:
        return match.group(1) + _REDACTED + match.group(2)
    if match.lastindex:
        return match.group(1) + _REDACTED
    return _REDACTED


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure application-wide logging.

    Args:
        log_level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL. Defaults to INFO.
        log_format: ``"json"`` for structured output, ``"text"`` for human-readable.
                    Defaults to ``"json"``.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_SecretFilter())
    handler.setFormatter(_JsonFormatter() if fmt == "json" else _TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("Logging configured", extra={"level": level, "format": fmt})
