"""Unit tests for logging configuration."""

import logging

import pytest

from libao_portfolio.utils.logging import get_logger, log_with_context, setup_logging


class TestLoggingSetup:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self) -> None:
        """Test setup_logging with default INFO level."""
        setup_logging()

        assert logging.getLogger("test").getEffectiveLevel() == logging.INFO

    def test_setup_logging_debug_level(self) -> None:
        """Test setup_logging with DEBUG level."""
        setup_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_invalid_level_fallback(self) -> None:
        """Test setup_logging with invalid level falls back to INFO."""
        setup_logging(level="INVALID")

        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_quiets_urllib3(self) -> None:
        """Test urllib3 connection chatter stays at WARNING or above."""
        setup_logging(level="DEBUG")

        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("requests").level == logging.WARNING

    def test_setup_logging_error_level_kept_for_http(self) -> None:
        """Test a stricter root level also applies to the HTTP loggers."""
        setup_logging(level="ERROR")

        assert logging.getLogger("urllib3").level == logging.ERROR


class TestGetLogger:
    """Test cases for get_logger function."""

    def test_get_logger_returns_named_logger(self) -> None:
        """Test get_logger returns a Logger with the given name."""
        logger = get_logger("libao_portfolio.test")

        assert isinstance(logger, logging.Logger)
        assert logger.name == "libao_portfolio.test"


class TestLogWithContext:
    """Test cases for log_with_context function."""

    def test_context_appended(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test context fields are appended as key=value pairs."""
        logger = get_logger("test_context")

        with caplog.at_level(logging.INFO, logger="test_context"):
            log_with_context(logger, "info", "Order executed", symbol="2330", shares=1000)

        assert "Order executed | symbol=2330 shares=1000" in caplog.text

    def test_without_context(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test message is logged unchanged without context."""
        logger = get_logger("test_plain")

        with caplog.at_level(logging.WARNING, logger="test_plain"):
            log_with_context(logger, "warning", "Plain message")

        assert caplog.records[-1].getMessage() == "Plain message"
        assert caplog.records[-1].levelno == logging.WARNING

    def test_none_fields_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test context fields without a value are left out."""
        logger = get_logger("test_none")

        with caplog.at_level(logging.INFO, logger="test_none"):
            log_with_context(logger, "info", "Lot removed", lot_id=None, symbol="AAPL")

        assert caplog.records[-1].getMessage() == "Lot removed | symbol=AAPL"

    def test_only_none_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test a message whose fields are all None is logged bare."""
        logger = get_logger("test_none_only")

        with caplog.at_level(logging.INFO, logger="test_none_only"):
            log_with_context(logger, "info", "Cache cleared", symbol=None)

        assert caplog.records[-1].getMessage() == "Cache cleared"
