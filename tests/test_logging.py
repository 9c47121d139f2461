"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from resilience.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        """Context fields are emitted at the top level."""
        record = make_record("Rate limit exceeded")
        record.request_id = "req-1"
        record.client_key = "ip:10.0.0.1"
        record.connection_id = "conn_1_abc"
        record.status_code = 429

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-1"
        assert data["client_key"] == "ip:10.0.0.1"
        assert data["connection_id"] == "conn_1_abc"
        assert data["status_code"] == 429
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        record = make_record("Custom event")
        record.retry_after = 900
        record.ws_path = "/ws"

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["retry_after"] == 900
        assert data["extra"]["ws_path"] == "/ws"

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_json_format_unicode(self):
        data = json.loads(JSONFormatter().format(make_record("Erinnerung: Übung fällig 🌱")))
        assert data["message"] == "Erinnerung: Übung fällig 🌱"


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = make_record()

        assert ContextFilter().filter(record) is True
        for field in ("request_id", "user_id", "client_key", "connection_id", "path", "method", "status_code"):
            assert hasattr(record, field)
            assert getattr(record, field) is None

    def test_preserves_existing_values(self):
        record = make_record()
        record.user_id = 42

        ContextFilter().filter(record)

        assert record.user_id == 42


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("resilience.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert "standard" in config["formatters"]
        assert "structured" in config["formatters"]
        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_structured_format(self):
        with patch("resilience.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "DEBUG"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert config["handlers"]["console"]["level"] == "DEBUG"

    def test_json_format(self):
        with patch("resilience.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["handlers"]["console"]["level"] == "WARNING"

    def test_context_filter_added(self):
        config = get_logging_config()

        assert "context" in config["filters"]
        assert "context" in config["handlers"]["console"]["filters"]
        assert "resilience" in config["loggers"]


class TestGetLogger:
    def test_get_logger_default_name(self):
        assert get_logger().name == "resilience"

    def test_get_logger_custom_name(self):
        assert get_logger("custom.module").name == "custom.module"


class TestGetLogContext:
    """Test get_log_context helper function."""

    def test_basic_context(self):
        context = get_log_context(user_id=42, connection_id="conn_1_abc")
        assert context == {"user_id": 42, "connection_id": "conn_1_abc"}

    def test_context_filters_none(self):
        context = get_log_context(request_id="req-1", user_id=None, url=None)
        assert context == {"request_id": "req-1"}

    def test_context_with_extra(self):
        context = get_log_context(client_key="user:1", retry_after=60)
        assert context["client_key"] == "user:1"
        assert context["retry_after"] == 60


class TestIntegration:
    def test_json_logging_output(self, capsys):
        with patch("resilience.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "INFO"

            setup_logging()
            logger = get_logger("resilience.test")
            logger.info(
                "Integration test",
                extra=get_log_context(user_id=7, connection_id="conn_1_abc"),
            )

        data = json.loads(capsys.readouterr().out.strip())

        assert data["level"] == "INFO"
        assert data["logger"] == "resilience.test"
        assert data["message"] == "Integration test"
        assert data["user_id"] == 7
        assert data["connection_id"] == "conn_1_abc"
