"""
Structured logging configuration for sessionfleet.

Provides:
- JSON or human-readable console output
- Security filtering (no secrets in fields or in logged command text)
- Extra severities used across the fleet: SUCCESS and SYSTEM
- Optional per-scope log files (one file per identity per day)

Usage:
    from sessionfleet.logging_config import setup_logging, get_logger

    setup_logging(log_dir=Path("logs"))  # Call once at startup
    logger = get_logger(__name__)
    logger.log(SUCCESS, "Spawned", extra={"identity": "bot_3"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Severity vocabulary: info, success, warning, error, system-level status
SYSTEM = 22
SUCCESS = 25
logging.addLevelName(SYSTEM, "SYSTEM")
logging.addLevelName(SUCCESS, "SUCCESS")

# Scope used when a record carries no identity
SYSTEM_SCOPE = "SYSTEM"

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Auth commands sent over the session: "/login <secret>", "/register <s> <s>"
    (re.compile(r"(/login)\s+\S+", re.I), r"\1 [REDACTED]"),
    (re.compile(r"(/register)\s+\S+(\s+\S+)?", re.I), r"\1 [REDACTED]"),
    # key=value style secrets
    (re.compile(r"\b(password|secret|token)[=:]\s*['\"]?[\w\-\.]+['\"]?", re.I), r"\1=[REDACTED]"),
    # IP addresses (v4)
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
]

# Fields that should NEVER appear in logs
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "secret",
        "password",
        "token",
        "credential",
        "auth",
        "authorization",
    }
)

_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)

# ANSI colors for the console formatter
_LEVEL_COLORS: dict[int, str] = {
    logging.ERROR: "\x1b[31m",
    SUCCESS: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    SYSTEM: "\x1b[36m",
}
_COLOR_RESET = "\x1b[0m"


def _sanitize_text(text: str) -> str:
    """Remove secrets and addresses from free-form text."""
    if not text:
        return text

    result = text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive fields from log record extras.

    Recursively filters nested dicts up to depth 3.
    """
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}

    for key, value in record.items():
        key_lower = key.lower()

        # Skip fields containing blocked words (covers exact matches too)
        if any(blocked in key_lower for blocked in BLOCKED_FIELDS):
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            if len(value) <= 10:
                filtered[key] = list(value)
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))

    return filtered


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Collect user-supplied extra fields from a record."""
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


def record_scope(record: logging.LogRecord) -> str:
    """Get the scope (identity name or SYSTEM) a record belongs to."""
    identity = getattr(record, "identity", None)
    return str(identity) if identity else SYSTEM_SCOPE


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Output format:
    {"ts":"2024-01-01T00:00:00.000Z","level":"INFO","logger":"module","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "scope": record_scope(record),
            "msg": _sanitize_text(record.getMessage()),
        }

        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            exc_text = self.formatException(record.exc_info)
            log_dict["exc"] = _sanitize_text(exc_text)

        extra = _record_extras(record)
        extra.pop("identity", None)
        if extra:
            log_dict.update(_filter_log_record(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for consoles.

    Produces "[HH:MM:SS] [scope] message | k=v" with optional ANSI colors
    keyed by severity.
    """

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        base = f"[{timestamp}] [{record_scope(record)}] {_sanitize_text(record.getMessage())}"

        extra = _record_extras(record)
        extra.pop("identity", None)
        if extra:
            filtered = _filter_log_record(extra)
            if filtered:
                extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
                base = f"{base} | {extra_str}"

        if record.exc_info:
            base = f"{base}\n{_sanitize_text(self.formatException(record.exc_info))}"

        if self._color:
            color = _LEVEL_COLORS.get(record.levelno)
            if color:
                return f"{color}{base}{_COLOR_RESET}"
        return base


class ScopeFileHandler(logging.Handler):
    """Append each record to ``<log_dir>/<scope>-<YYYY-MM-DD>.log``.

    One file per identity (or SYSTEM) per day. Lines are
    ``[HH:MM:SS] [scope] message`` with secrets sanitized.
    """

    def __init__(self, log_dir: Path, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._log_dir = log_dir
        self._log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        """Directory the handler writes into."""
        return self._log_dir

    def path_for(self, scope: str, created: float) -> Path:
        """Get the log file path for a scope at a given timestamp."""
        date = datetime.fromtimestamp(created).strftime("%Y-%m-%d")
        safe_scope = re.sub(r"[^\w.\-]", "_", scope)
        return self._log_dir / f"{safe_scope}-{date}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            scope = record_scope(record)
            timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
            line = f"[{timestamp}] [{scope}] {_sanitize_text(record.getMessage())}\n"
            with self.path_for(scope, record.created).open("a", encoding="utf-8") as fh:
                fh.write(line)
        except Exception:
            self.handleError(record)


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    color: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure logging for the application.

    Call once at application startup.

    Args:
        level: Log level (default INFO).
        json_format: Use JSON formatter instead of the console formatter.
        stream: Output stream (default stderr).
        color: Colorize console output by severity.
        log_dir: If set, also write per-scope log files into this directory.
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    formatter = JsonFormatter() if json_format else SimpleFormatter(color=color)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)

    if log_dir is not None:
        root.addHandler(ScopeFileHandler(log_dir))

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Configured Logger instance.
    """
    return logging.getLogger(name)
