import json
import logging
from unittest.mock import Mock, patch

import pytest

from core.logging_config import (
    ColoredConsoleFormatter,
    StructuredFormatter,
    SyncContextFilter,
    get_logger,
    get_logging_config,
    get_sync_context,
    log_function_call,
    set_sync_context,
)


def _record(message="Test message", level=logging.INFO):
    return logging.LogRecord(
        name="services.test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestLoggingSetup:
    """Test logging configuration setup."""

    def test_development_uses_colored_console(self):
        with patch.dict("os.environ", {"ENVIRONMENT": "development", "LOG_LEVEL": "DEBUG"}):
            config = get_logging_config()
        assert config["handlers"]["console"]["formatter"] == "colored_console"
        assert config["loggers"]["services"]["level"] == "DEBUG"

    def test_production_uses_structured_output(self):
        with patch.dict("os.environ", {"ENVIRONMENT": "production", "LOG_LEVEL": "INFO"}):
            config = get_logging_config()
        assert config["handlers"]["console"]["formatter"] == "structured"
        assert "file" not in config["handlers"]

    def test_production_log_file(self, tmp_path):
        log_file = str(tmp_path / "sync.log")
        with patch.dict("os.environ", {"ENVIRONMENT": "production", "LOG_FILE": log_file}):
            config = get_logging_config()
        assert config["handlers"]["file"]["filename"] == log_file
        assert "file" in config["loggers"]["core"]["handlers"]

    def test_console_handler_has_sync_context_filter(self):
        config = get_logging_config()
        assert config["handlers"]["console"]["filters"] == ["sync_context"]

    def test_get_logger(self):
        logger = get_logger("services.test_module")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "services.test_module"


class TestSyncContextFilter:
    def test_adds_context_id(self):
        set_sync_context("user-1#3")
        try:
            record = _record()
            assert SyncContextFilter().filter(record) is True
            assert record.sync_context == "user-1#3"
        finally:
            set_sync_context(None)

    def test_no_context(self):
        set_sync_context(None)
        record = _record()
        SyncContextFilter().filter(record)
        assert not hasattr(record, "sync_context")
        assert get_sync_context() is None


class TestFormatters:
    def test_structured_formatter(self):
        record = _record()
        record.sync_context = "user-1#1"
        record.room_id = "room-9"

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["message"] == "Test message"
        assert data["sync_context"] == "user-1#1"
        assert data["extra"] == {"room_id": "room-9"}

    def test_structured_formatter_exception(self):
        try:
            raise ValueError("bad payload")
        except ValueError:
            import sys

            record = logging.LogRecord(
                "core", logging.ERROR, "t.py", 1, "failed", (), sys.exc_info()
            )
        data = json.loads(StructuredFormatter().format(record))
        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad payload"

    def test_colored_formatter(self):
        record = _record(level=logging.WARNING)
        record.sync_context = "user-1#2"
        output = ColoredConsoleFormatter().format(record)
        assert "\033[33m" in output
        assert "[user-1#2]" in output
        assert "Test message" in output


class TestLogFunctionCall:
    def test_sync_function(self):
        logger = Mock()

        @log_function_call(logger)
        def add(a, b):
            return a + b

        assert add(1, 2) == 3
        assert logger.debug.call_count == 2

    @pytest.mark.asyncio
    async def test_async_function_error(self):
        logger = Mock()

        @log_function_call(logger)
        async def fail():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await fail()
        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["extra"]["error_type"] == "RuntimeError"
