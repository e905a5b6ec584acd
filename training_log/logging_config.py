"""Logging for the training log.

Library modules log through ``training_log.*`` loggers and attach structured
context as ``extra={"training_log_added": {...}}``. ``setup_logging`` wires a
single handler onto the ``training_log`` logger; the context is rendered as a
nested object in JSON output and as ``key=value`` pairs in text output.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from .settings import get_settings

LOGGER_NAME = "training_log"
EXTRA_PREFIX = "training_log_"


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """The ``training_log_*`` extras on a record, keyed without the prefix."""
    return {
        key[len(EXTRA_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, then context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = record_context(record)
        if context:
            line += " " + " ".join(f"{key}={json.dumps(value, default=str)}" for key, value in context.items())
        return line


def setup_logging(log_format: Optional[str] = None, level: Union[int, str, None] = None) -> logging.Logger:
    """Send ``training_log`` records to stderr; unset arguments come from settings."""
    settings = get_settings()
    log_format = log_format or settings.log_format
    if level is None:
        level = settings.log_level
    if isinstance(level, str):
        level = level.upper()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger
