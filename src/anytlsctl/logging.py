"""
Logging for the AnyTLS lifecycle manager.

Everything is written under the "anytlsctl" logger to stderr, leaving stdout
to command results. Text is the default; `--json-logs` switches to one JSON
object per line carrying the structured `extra=` fields (workflow, states,
versions, paths).
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from anytlsctl.config import LoggingConfig

# Text output format
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came from `extra=`
_RESERVED_RECORD_KEYS = {
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
    "taskName",
    "message",
}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: timestamp (UTC), level, logger, message, then
    every non-None `extra=` field (state transitions, versions, paths).
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize *record*; values that are not JSON-native go through str()."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    (Re)configure the "anytlsctl" logger; safe to call once per command.

    Args:
        config: Logging section of AppConfig; wins over *level* and
            *json_format* when given.
        level: Level name used without a config.
        json_format: Emit JSON lines instead of text.
        stream: Destination; stderr unless a test passes a buffer.

    Returns:
        The configured "anytlsctl" logger.

    Example:
        >>> from anytlsctl.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Lock acquired", extra={"path": "/var/lock/x.lock"})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
    else:
        log_level = level.upper()

    logger = logging.getLogger("anytlsctl")
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Repeated setup must not stack handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(getattr(logging, log_level, logging.INFO))
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the "anytlsctl" logger for module *name*."""
    if not name.startswith("anytlsctl"):
        name = f"anytlsctl.{name}"

    return logging.getLogger(name)
