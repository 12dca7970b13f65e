"""
DialBridge - Structured Logging

Provides structured JSON logging with context injection for call IDs and
carrier stream IDs. Phone numbers and secrets in structured data are masked.

Also provides SystemLogBuffer, a bounded in-memory handler backing the
dashboard's system log panel.
"""

from __future__ import annotations

import json
import logging
import sys
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional


# =============================================================================
# Context Variables
# =============================================================================

# Per-call context, set by the media bridge and the webhook handlers
call_id_var: ContextVar[Optional[str]] = ContextVar('call_id', default=None)
stream_sid_var: ContextVar[Optional[str]] = ContextVar('stream_sid', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

_SENSITIVE_KEYS = {
    'phone', 'number', 'from', 'to', 'caller', 'callee',
    'api_key', 'password', 'token', 'secret',
}


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Sensitive fields: phone, number, from, to, api_key, token, etc.
    """
    masked = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(s in key_lower for s in _SENSITIVE_KEYS):
            if isinstance(value, str):
                masked[key] = f"***{value[-2:]}" if len(value) > 2 else "***"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


def _context_fields() -> Dict[str, str]:
    fields = {}
    call_id = call_id_var.get()
    if call_id:
        fields["call_id"] = call_id
    stream_sid = stream_sid_var.get()
    if stream_sid:
        fields["stream_sid"] = stream_sid
    return fields


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that injects context variables and masks sensitive data.

    Output format:
    {
        "timestamp": "2025-01-01T00:00:00.000000+00:00",
        "level": "INFO",
        "logger": "app.telephony.bridge",
        "call_id": "call-1a2b3c4d5e6f",
        "stream_sid": "MZ...",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_context_fields())

        if hasattr(record, 'event_type'):
            log_entry["event_type"] = record.event_type

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = [f"{k}={v}" for k, v in _context_fields().items()]
        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# System Log Buffer
# =============================================================================

SYSTEM_LOG_TYPES = {"INFO", "SUCCESS", "ERROR", "WARNING", "WEBHOOK", "API_REQ", "API_RES"}


class SystemLogBuffer(logging.Handler):
    """
    Bounded in-memory log handler for the dashboard.

    Keeps the most recent entries from the ``app`` logger hierarchy and
    optionally forwards each one to a publisher callback (the dashboard
    broadcaster) as a ``log`` event.

    The entry type comes from a ``log_type`` extra when present, otherwise
    from the record level:

        logger.info("Webhook received", extra={"log_type": "WEBHOOK"})
    """

    def __init__(
        self,
        max_entries: int = 200,
        level: int = logging.INFO,
        publisher: Optional[Callable[[dict], None]] = None,
        logger_prefix: str = "app",
    ):
        super().__init__(level)
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._publisher = publisher
        self._prefix = logger_prefix
        self._next_id = 1
        self._emitting = False

    def set_publisher(self, publisher: Optional[Callable[[dict], None]]) -> None:
        self._publisher = publisher

    @staticmethod
    def _entry_type(record: logging.LogRecord) -> str:
        log_type = getattr(record, "log_type", None)
        if log_type in SYSTEM_LOG_TYPES:
            return log_type
        if record.levelno >= logging.ERROR:
            return "ERROR"
        if record.levelno >= logging.WARNING:
            return "WARNING"
        return "INFO"

    def emit(self, record: logging.LogRecord) -> None:
        if self._prefix and not (
            record.name == self._prefix or record.name.startswith(self._prefix + ".")
        ):
            return
        # Publishing must not re-enter the handler
        if self._emitting:
            return
        self._emitting = True
        try:
            details = dict(_context_fields())
            data = getattr(record, "data", None)
            if isinstance(data, dict):
                details.update(mask_sensitive_data(data))

            entry = {
                "id": self._next_id,
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "type": self._entry_type(record),
                "message": record.getMessage(),
                "details": details or None,
            }
            self._next_id += 1
            self._entries.append(entry)

            if self._publisher is not None:
                self._publisher({"type": "log", "log": entry})
        except Exception:
            self.handleError(record)
        finally:
            self._emitting = False

    def entries(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Buffered entries, newest first."""
        items = list(reversed(self._entries))
        return items[:limit] if limit else items

    def clear(self) -> None:
        self._entries.clear()


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
    extra_handlers: Optional[List[logging.Handler]] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
        extra_handlers: Additional handlers attached to the root logger
            (e.g. the SystemLogBuffer)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    for extra in extra_handlers or []:
        root_logger.addHandler(extra)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


# =============================================================================
# Context Managers
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(call_id="call-1a2b3c4d5e6f"):
            logger.info("Processing webhook")
    """

    def __init__(
        self,
        call_id: Optional[str] = None,
        stream_sid: Optional[str] = None,
    ):
        self._values = [(call_id_var, call_id), (stream_sid_var, stream_sid)]
        self._tokens = []

    def __enter__(self):
        for var, value in self._values:
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
