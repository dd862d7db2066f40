"""
Quote Commander — Structured Logging

JSON log lines for every call turn and Commander job. Field names follow
OpenTelemetry semantic conventions (service.name, service.version) so the
output can be shipped to any OTel-compatible collector without rewriting.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Structured fields ride on record.structured and are merged into the line
  - Configurable level: DEBUG (prompts + raw LLM output), INFO (actions),
    WARNING (fallbacks, skipped directives), ERROR (webhook failures)

Usage:
    from engine.logging import configure_logging, get_logger, log_event

    configure_logging(level="INFO")
    logger = get_logger("turn")
    log_event(logger, logging.INFO, "turn_processed",
              call_id="call_1", turn_number=3, to_node="negotiate")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "quote_commander"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

      - service.name: "quote_commander"
      - service.version: from QC_VERSION
      - any dict attached as record.structured is merged in
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("QC_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the quote_commander logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured quote_commander logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the quote_commander namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def log_event(
    logger: logging.Logger,
    level: int,
    action: str,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """Emit one structured entry: `action` becomes the message and a field."""
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(
        name=logger.name,
        level=level,
        fn="", lno=0, msg=action,
        args=(), exc_info=sys.exc_info() if exc_info else None,
    )
    record.structured = {"action": action, **fields}
    logger.handle(record)
