"""Unit tests for structured logging."""

import json
import logging
import sys

import pytest

from lakehouse_cdc.observability.logging_config import JSONFormatter, get_logger, setup_logging


def _record(message, **extra):
    record = logging.LogRecord("lakehouse_cdc.test", logging.WARNING, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
class TestJSONFormatter:
    """Test JSON log lines."""

    def test_basic_fields(self):
        """Test standard fields are present."""
        line = json.loads(JSONFormatter().format(_record("Checkpoint advanced")))

        assert line["level"] == "WARNING"
        assert line["logger"] == "lakehouse_cdc.test"
        assert line["message"] == "Checkpoint advanced"

    def test_extra_fields_included(self):
        """Test fields passed through extra= appear in the line."""
        line = json.loads(
            JSONFormatter().format(_record("Committed", pipeline="orders", table="analytics.orders", position="0/64:1"))
        )

        assert line["pipeline"] == "orders"
        assert line["table"] == "analytics.orders"
        assert line["position"] == "0/64:1"

    def test_exception_included(self):
        """Test exception text is rendered."""
        try:
            raise ValueError("bad value")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        line = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad value" in line["exception"]


@pytest.mark.unit
class TestSetupLogging:
    """Test logging setup."""

    def test_setup_installs_json_handler(self):
        """Test the root logger gets a single JSON handler."""
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("debug")

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_get_logger(self):
        """Test loggers are named after their module."""
        assert get_logger("lakehouse_cdc.cdc").name == "lakehouse_cdc.cdc"
