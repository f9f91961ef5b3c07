"""Structured JSON request logging for the proxy.

Logs go to stdout as JSON lines (12-factor/cloud-native pattern).
Optional file output via AUDIT_LOG_FILE env var.

One line is written per proxied request. Upstream credentials only ever
appear as a short prefix.
"""

import json
import logging
import sys
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from contextvars import ContextVar

from gemini_proxy.config.settings import get_settings

LOGGER_NAME = "proxy.audit"

# Request-scoped context for correlating log entries
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }
        # Merge any extra fields passed via `extra={}` kwarg
        if hasattr(record, "audit_data"):
            log_entry.update(record.audit_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Configure the audit logger with JSON output."""
    settings = get_settings()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    if settings.audit_log_file:
        file_handler = logging.FileHandler(settings.audit_log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger (avoids duplicate output)
    logger.propagate = False


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Context manager to measure request latency."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 2)


@dataclass
class RequestLogEntry:
    """Everything logged about one inbound request."""

    method: str
    path: str
    client_ip: str
    user_agent: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    api_key: str | None = None  # prefix only
    stream: bool = False
    response_status: int | None = None
    response_time_ms: float | None = None
    upstream_latency_ms: float | None = None
    error: str | None = None
    _started: float = field(default_factory=time.perf_counter, repr=False)

    def finish(self, status: int, error: str | None = None) -> "RequestLogEntry":
        self.response_status = status
        if error is not None:
            self.error = error
        self.response_time_ms = round((time.perf_counter() - self._started) * 1000, 2)
        return self

    def as_dict(self) -> dict:
        data = asdict(self)
        data.pop("_started")
        return data


def log_request(entry: RequestLogEntry) -> None:
    """Emit the terminal log line for a request."""
    logger = get_audit_logger()
    status = entry.response_status or 0
    message = "Request failed" if status >= 400 else "Request proxied"
    level = logging.WARNING if status >= 400 else logging.INFO
    logger.log(level, message, extra={"audit_data": entry.as_dict()})
