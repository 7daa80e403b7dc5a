"""Logging setup plus structured event and context helpers."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from parley.paths import log_dir

DEFAULT_LOG_FILE = "parley.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("parley_log_context", default={})
_LOG_CHUNKS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    """Resolved logging settings for one process."""

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _parse_level(value: str | None, default: int) -> int:
    """Parse a log level string or numeric value from environment settings."""
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging.getLevelNamesMapping().get(value.upper(), default)


def _parse_bool(value: str | None, default: bool) -> bool:
    """Parse a truthy/falsy toggle from environment settings."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int) -> int:
    """Parse an integer setting, returning the default on invalid input."""
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def build_log_config(*, log_file_name: str = DEFAULT_LOG_FILE, default_level: int = logging.INFO) -> LogConfig:
    """Build a `LogConfig` from `PARLEY_LOG_*` environment variables."""

    directory = Path(os.getenv("PARLEY_LOG_DIR") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=_parse_level(os.getenv("PARLEY_LOG_LEVEL"), default_level),
        stderr=_parse_bool(os.getenv("PARLEY_LOG_STDERR"), False),
        json=_parse_bool(os.getenv("PARLEY_LOG_JSON"), False),
        log_chunks=_parse_bool(os.getenv("PARLEY_LOG_CHUNKS"), False),
        max_bytes=_parse_int(os.getenv("PARLEY_LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=_parse_int(os.getenv("PARLEY_LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Install rotating file (and optional stderr) handlers on the root logger.

    Existing root handlers are dropped first so repeated calls never double-log.
    """

    global _LOG_CHUNKS_ENABLED
    _LOG_CHUNKS_ENABLED = config.log_chunks

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """Return True when per-delta stream logging was requested."""

    return _LOG_CHUNKS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged inside the block.

    Nested blocks merge with the enclosing fields; `None` values are ignored.
    """

    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_LOG_CONTEXT.get())


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short dotted event name with structured fields."""

    logger.log(level, event, extra={"event_fields": fields})


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple, set)):
        if isinstance(value, set):
            value = sorted(value, key=str)
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _render_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_render_value(fields[key])}" for key in sorted(fields) if fields[key] is not None)


class ContextFilter(logging.Filter):
    """Copy the active log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = current_log_context()
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    """Plain text lines followed by key=value context and event fields."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        suffix = " ".join(
            part
            for part in (
                _render_fields(getattr(record, "context_fields", {})),
                _render_fields(getattr(record, "event_fields", {})),
            )
            if part
        )
        return f"{base} {suffix}" if suffix else base


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for jq or log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        return json.dumps(payload, ensure_ascii=True, default=str)
