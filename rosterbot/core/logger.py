"""
Global Logger - Centralized JSON structured logging for roster components.

Every component logs through a ComponentLogger so that records share one shape:
- One JSON object per line with timestamp, level, event and component
- Correlation ID support for following a single reconciliation pass
- Secret redaction, and member/guild identifier masking in production
- Daily rotating file output plus console output via setup_logging()
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Optional
from contextvars import ContextVar

correlation_id_context: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)

_SECRET_MARKERS = ("password", "token", "secret", "credentials")
_IDENTIFIER_FIELDS = frozenset(
    {
        "guild_id",
        "user_id",
        "member_id",
        "member_ids",
        "thread_id",
        "channel_id",
        "registered_name",
    }
)

def log_json(component: str, level: str, event: str, **fields) -> None:
    """
    Log structured JSON message with correlation ID and PII masking.

    Args:
        component: Component name (e.g., "roster", "exporter")
        level: Log level ("debug", "info", "warning", "error", "critical")
        event: Event identifier
        **fields: Additional fields to log
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": level.upper(),
        "event": event,
        "component": component,
    }

    correlation_id = correlation_id_context.get(None)
    if correlation_id:
        log_entry["correlation_id"] = str(correlation_id)[:8]

    is_production = os.environ.get("PRODUCTION", "False").lower() == "true"
    for key, value in fields.items():
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            log_entry[key] = "REDACTED"
        elif is_production and key in _IDENTIFIER_FIELDS:
            log_entry[key] = "REDACTED"
        elif key == "exc_info":
            exc_info = sys.exc_info() if value is True else value
            if isinstance(exc_info, tuple) and len(exc_info) >= 2 and exc_info[0]:
                log_entry["exception_type"] = exc_info[0].__name__
                log_entry["exception_message"] = str(exc_info[1])
        else:
            log_entry[key] = value

    json_str = json.dumps(log_entry, separators=(",", ":"), default=str)
    getattr(logging, level.lower())(json_str)

class ComponentLogger:
    """
    Component-specific logger wrapper for consistent logging.

    Automatically includes component name in all log calls.
    """

    def __init__(self, component_name: str):
        self.component_name = component_name

    def debug(self, event: str, **fields) -> None:
        log_json(self.component_name, "debug", event, **fields)

    def info(self, event: str, **fields) -> None:
        log_json(self.component_name, "info", event, **fields)

    def warning(self, event: str, **fields) -> None:
        log_json(self.component_name, "warning", event, **fields)

    def error(self, event: str, **fields) -> None:
        log_json(self.component_name, "error", event, **fields)

    def critical(self, event: str, **fields) -> None:
        log_json(self.component_name, "critical", event, **fields)

def setup_logging(log_file: str, debug: bool = False) -> None:
    """
    Install daily rotating file output and console output on the root logger.

    Args:
        log_file: Path of the log file, rotated at midnight with 7 backups
        debug: Whether to log at DEBUG level instead of INFO
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    formatter = logging.Formatter("%(message)s")

    file_handler = TimedRotatingFileHandler(
        log_file, when="midnight", interval=1, backupCount=7, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.captureWarnings(True)
