"""
Logging helpers.

Modules log through ``logging.getLogger(__name__)`` and never touch handlers.
Applications that want output call ``configure_logging`` once; records are
rendered as single-line JSON objects:

    {"ts": "2026-...", "level": "DEBUG", "module": "weightnorm.weight_norm", "msg": "reset", "units": 8}

Anything passed through ``extra=`` is merged into the object.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

_ROOT = "weightnorm"

_RECORD_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Formats a record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace."""
    if name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Attach a JSON handler to the package logger.

    Calling it again replaces the previous handler instead of stacking a
    second one.

    Args:
        level: Level name, e.g. "DEBUG" or "INFO"
        stream: Destination stream, stderr by default

    Returns:
        The package logger
    """
    logger = logging.getLogger(_ROOT)
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        if getattr(handler, "_weightnorm", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler._weightnorm = True
    logger.addHandler(handler)
    logger.propagate = False
    return logger
