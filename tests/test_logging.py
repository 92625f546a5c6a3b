"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

import pytest

from legacy_upgrade.config import LoggingConfig
from legacy_upgrade.logging import JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> None:
    """Clean up loggers after each test (autouse fixture)."""
    yield
    logger = logging.getLogger("legacy_upgrade")
    logger.handlers.clear()
    logger.propagate = True


def _record(msg: str, *args: object, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="legacy_upgrade.test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=None,
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record("Probe complete")))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "legacy_upgrade.test"
        assert parsed["message"] == "Probe complete"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields are included."""
        record = _record("Transfer complete")
        record.strategy = "http_pull"
        record.size = 10000

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["strategy"] == "http_pull"
        assert parsed["size"] == 10000

    def test_format_with_message_args(self) -> None:
        """Test message arguments are interpolated."""
        parsed = json.loads(JSONFormatter().format(_record("Chunk %d", 4)))
        assert parsed["message"] == "Chunk 4"

    def test_format_with_exception(self) -> None:
        """Test exception info is rendered."""
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()

        record = _record("Failed", level=logging.ERROR)
        record.exc_info = exc_info

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in parsed["exception"]

    def test_non_serializable_extra_is_stringified(self) -> None:
        """Test values json cannot encode fall back to str()."""
        record = _record("Saved")
        record.path = StringIO  # a class, not JSON serializable

        parsed = json.loads(JSONFormatter().format(record))

        assert "StringIO" in parsed["path"]


# =============================================================================
# Tests for setup_logging / get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_setup_logging_sets_level(self) -> None:
        """Test the level is applied."""
        logger = setup_logging(level="DEBUG")
        assert logger.level == logging.DEBUG

    def test_setup_logging_json_format(self) -> None:
        """Test JSON output is selected."""
        stream = StringIO()
        logger = setup_logging(json_format=True, stream=stream)

        logger.info("Device found", extra={"address": "10.13.0.1"})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["message"] == "Device found"
        assert parsed["address"] == "10.13.0.1"

    def test_setup_logging_console_format(self) -> None:
        """Test the default format is human readable."""
        stream = StringIO()
        logger = setup_logging(stream=stream)

        logger.warning("Backup failed")

        line = stream.getvalue().strip()
        assert "[WARNING] Backup failed" in line

    def test_setup_logging_clears_existing_handlers(self) -> None:
        """Test repeated setup keeps one handler."""
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_setup_logging_no_propagation(self) -> None:
        """Test records do not propagate to the root logger."""
        assert setup_logging().propagate is False

    def test_setup_with_logging_config(self) -> None:
        """Test a LoggingConfig overrides the keyword arguments."""
        stream = StringIO()
        logger = setup_logging(
            LoggingConfig(level="warn", json_format=True), level="DEBUG", stream=stream
        )

        logger.info("hidden")
        logger.warning("shown")

        assert logger.level == logging.WARNING
        assert json.loads(stream.getvalue().strip())["message"] == "shown"


class TestGetLogger:
    """Tests for get_logger."""

    def test_get_logger_adds_prefix(self) -> None:
        """Test names get the package prefix."""
        assert get_logger("probe").name == "legacy_upgrade.probe"

    def test_get_logger_does_not_duplicate_prefix(self) -> None:
        """Test module names are kept as they are."""
        assert get_logger("legacy_upgrade.auth").name == "legacy_upgrade.auth"

    def test_child_records_reach_package_handler(self) -> None:
        """Test module loggers write through the package handler."""
        stream = StringIO()
        setup_logging(json_format=True, stream=stream)

        get_logger("legacy_upgrade.transfer.chain").info("child")

        assert json.loads(stream.getvalue().strip())["logger"] == "legacy_upgrade.transfer.chain"
