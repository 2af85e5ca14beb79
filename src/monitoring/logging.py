"""
Structured logging for the AEC perpetual engine.

Provides JSON-formatted logging for production log shipping and a colored
console format for local simulation runs.

Features:
- JSON output format for easy parsing (LOG_FORMAT=json)
- Cycle / request context (cycle_id, request_id) attached to every line
- Redaction of API keys and bearer tokens
- Configurable log level (LOG_LEVEL)
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Sensitive Data Redaction
# ============================================================

SENSITIVE_PATTERNS = [
    (re.compile(r"(api[_-]?key|token|secret|password)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
                re.IGNORECASE), r"\1\2[REDACTED]"),
    (re.compile(r"(Bearer\s+)([^\s]+)", re.IGNORECASE), r"\1[REDACTED]"),
]

REDACTED_FIELDS = {
    "api_key",
    "apikey",
    "x_api_key",
    "token",
    "secret",
    "password",
    "authorization",
}

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname", "levelno",
    "lineno", "module", "msecs", "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName", "message", "taskName",
})


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively redact sensitive values from dicts, lists and strings."""
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS:
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result
    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


def redact_string(text: str) -> str:
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# Thread-local storage for cycle/request context
_log_context = threading.local()


def set_log_context(**kwargs) -> None:
    """Set context values attached to every log line on this thread."""
    if not hasattr(_log_context, "data"):
        _log_context.data = {}
    _log_context.data.update(kwargs)


def clear_log_context() -> None:
    _log_context.data = {}


def get_log_context() -> dict[str, Any]:
    return getattr(_log_context, "data", {})


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "perpetual_engine",
        "message": "Cycle 3 processed: ...",
        "context": {"cycle_id": "4f1c2a9b03de"},
        ...
    }
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if self.redact_sensitive:
            message = redact_string(message)

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }

        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        context = get_log_context()
        if context:
            log_entry["context"] = redact_sensitive_data(context) if self.redact_sensitive else context

        for key, value in _extras(record).items():
            log_entry[key] = redact_sensitive_data(value) if self.redact_sensitive else value

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable colored formatter for simulations and development."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        msg = f"{color}{timestamp} {record.levelname[0]} [{record.name}]{reset} {record.getMessage()}"

        context = get_log_context()
        if context:
            ctx_str = " ".join(f"{k}={v}" for k, v in context.items())
            msg += f" {color}({ctx_str}){reset}"

        extras = [f"{k}={v}" for k, v in _extras(record).items()]
        if extras:
            msg += f" [{', '.join(extras)}]"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (defaults to LOG_FORMAT=json)
        log_file: Optional file path, always written as JSON
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LoggingContext:
    """
    Context manager for tagging log lines.

    Usage:
        with LoggingContext(cycle_id="4f1c2a9b03de"):
            logger.info("Cycle processed")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous_context = {}

    def __enter__(self):
        self.previous_context = get_log_context().copy()
        set_log_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        clear_log_context()
        if self.previous_context:
            set_log_context(**self.previous_context)
        return False
