"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Log level handling
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from anytlsctl.config import LoggingConfig
from anytlsctl.logging import JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> None:
    """Clean up loggers after each test (autouse fixture)."""
    yield
    logging.getLogger("anytlsctl").handlers.clear()


def _record(msg: str = "Test message", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test_logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Test message"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """State transition extras appear as top-level keys."""
        parsed = json.loads(
            JSONFormatter().format(
                _record(old_state="installing", new_state="starting", workflow="install")
            )
        )

        assert parsed["old_state"] == "installing"
        assert parsed["new_state"] == "starting"
        assert parsed["workflow"] == "install"

    def test_none_extras_are_omitted(self) -> None:
        """Extras set to None are dropped."""
        parsed = json.loads(JSONFormatter().format(_record(target_version=None)))

        assert "target_version" not in parsed

    def test_format_with_exception(self) -> None:
        """Exceptions are rendered into the entry."""
        try:
            raise ValueError("bad archive")
        except ValueError:
            import sys

            record = _record()
            record.exc_info = sys.exc_info()

        parsed = json.loads(JSONFormatter().format(record))

        assert "bad archive" in parsed["exception"]


# =============================================================================
# Tests for setup_logging / get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_json(self) -> None:
        """JSON format writes one JSON object per line."""
        stream = StringIO()
        setup_logging(level="DEBUG", json_format=True, stream=stream)

        get_logger("lifecycle.lock").debug("Lock acquired", extra={"path": "/tmp/x"})

        entry = json.loads(stream.getvalue().strip())
        assert entry["message"] == "Lock acquired"
        assert entry["logger"] == "anytlsctl.lifecycle.lock"
        assert entry["path"] == "/tmp/x"

    def test_setup_logging_from_config(self) -> None:
        """LoggingConfig overrides keyword arguments."""
        stream = StringIO()
        logger = setup_logging(
            LoggingConfig(level="error", json_format=False), stream=stream
        )

        get_logger(__name__).warning("hidden")
        get_logger(__name__).error("shown")

        output = stream.getvalue()
        assert logger.level == logging.ERROR
        assert "hidden" not in output
        assert "shown" in output

    def test_setup_logging_does_not_duplicate_handlers(self) -> None:
        """Repeated setup keeps one handler and does not propagate."""
        setup_logging(stream=StringIO())
        logger = setup_logging(stream=StringIO())

        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_get_logger_prefix(self) -> None:
        """get_logger adds the package prefix only when missing."""
        assert get_logger("cli").name == "anytlsctl.cli"
        assert get_logger("anytlsctl.export").name == "anytlsctl.export"
