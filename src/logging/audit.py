"""Structured JSON logging for the proxy.

One JSON object per line on stdout, plus an optional file copy when
AUDIT_LOG_FILE is set.

Every module logs under the ``yomi`` namespace (``yomi.keys``,
``yomi.prompts``, ...) so a single handler setup covers the whole app.
Upstream credentials must only ever be logged through ``mask_secret``.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from src.config.settings import get_settings

ROOT_LOGGER = "yomi"

# Core keys of every line; audit_data may not overwrite them
_CORE_FIELDS = ("timestamp", "level", "logger", "message", "request_id")

# Set per request in the route so background log lines stay correlated
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class JSONFormatter(logging.Formatter):
    """Renders a record, its ``audit_data`` and any traceback as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }
        audit_data = getattr(record, "audit_data", None) or {}
        for key, value in audit_data.items():
            entry[f"audit_{key}" if key in _CORE_FIELDS else key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging() -> None:
    """Attach JSON handlers to the ``yomi`` logger. Safe to call more than once."""
    settings = get_settings()

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.audit_log_file:
        handlers.append(logging.FileHandler(settings.audit_log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # Lines would otherwise be printed twice by the root logger
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def get_audit_logger() -> logging.Logger:
    return get_logger("audit")


def mask_secret(value: str) -> str:
    return f"...{value[-4:]}" if value else "..."


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Measures wall time of a ``with`` block in milliseconds."""

    def __init__(self):
        self.started: float = 0.0
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.started = time.perf_counter()
        return self

    def __exit__(self, *exc_info):
        self.elapsed_ms = round((time.perf_counter() - self.started) * 1000, 2)
