"""Tests for Herald structured logging."""

import asyncio
import logging

import pytest
import structlog

from herald.logging import QUIET_LOGGERS, configure_logging, delivery_context, get_logger


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_configure_with_defaults(self):
        """Should configure with INFO level and JSON format by default."""
        configure_logging()
        logger = get_logger("test")
        logger.info("test message")

    def test_configure_with_text_format(self):
        """Should accept text format for development."""
        configure_logging(level="INFO", format="text")
        logger = get_logger("test")
        logger.info("text format message")

    def test_configure_with_unknown_level(self):
        """Unknown level names fall back to INFO instead of raising."""
        configure_logging(level="LOUD")
        get_logger("test").info("still works")

    def test_configure_multiple_times(self):
        """Should handle multiple configuration calls."""
        configure_logging(level="INFO")
        configure_logging(level="DEBUG")
        get_logger("test").debug("after reconfigure")

    def test_http_client_request_logs_quieted(self):
        """httpx per-request INFO lines stay below the configured level."""
        configure_logging(level="INFO")
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

        configure_logging(level="ERROR")
        assert logging.getLogger("httpx").level == logging.ERROR


class TestGetLogger:
    """Tests for logger creation."""

    def test_get_logger_with_name(self):
        assert get_logger("herald.webhooks.sender") is not None

    def test_get_logger_without_name(self):
        assert get_logger() is not None

    def test_loggers_are_callable(self):
        logger = get_logger("test")
        assert callable(getattr(logger, "info", None))
        assert callable(getattr(logger, "warning", None))
        assert callable(getattr(logger, "exception", None))


class TestDeliveryContext:
    """Tests for per-attempt context binding."""

    def setup_method(self):
        structlog.contextvars.clear_contextvars()

    def teardown_method(self):
        structlog.contextvars.clear_contextvars()

    def test_binds_attempt_identity(self):
        with delivery_context("dlv_1", "whk_1", attempt=2):
            assert structlog.contextvars.get_contextvars() == {
                "delivery_id": "dlv_1",
                "subscription_id": "whk_1",
                "attempt": 2,
            }
        assert structlog.contextvars.get_contextvars() == {}

    def test_nested_block_restores_outer_values(self):
        with delivery_context("dlv_1", "whk_1", attempt=1):
            with delivery_context("dlv_2", "whk_1", attempt=3):
                assert structlog.contextvars.get_contextvars()["delivery_id"] == "dlv_2"
            assert structlog.contextvars.get_contextvars()["delivery_id"] == "dlv_1"
            assert structlog.contextvars.get_contextvars()["attempt"] == 1

    def test_cleared_on_exception(self):
        with pytest.raises(RuntimeError):
            with delivery_context("dlv_1", "whk_1", attempt=1):
                raise RuntimeError("boom")
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_concurrent_attempts_do_not_share_context(self):
        seen: dict[str, str] = {}

        async def attempt(delivery_id: str) -> None:
            with delivery_context(delivery_id, "whk_1", attempt=1):
                await asyncio.sleep(0.01)
                seen[delivery_id] = structlog.contextvars.get_contextvars()["delivery_id"]

        await asyncio.gather(attempt("dlv_a"), attempt("dlv_b"))
        assert seen == {"dlv_a": "dlv_a", "dlv_b": "dlv_b"}


class TestLoggerUsage:
    """Tests for logger usage patterns."""

    def test_log_with_kwargs(self):
        configure_logging()
        get_logger("test").info(
            "Webhook delivered",
            delivery_id="dlv_1",
            status_code=200,
            response_time_ms=42,
        )

    def test_log_with_exception(self):
        configure_logging()
        logger = get_logger("test")
        try:
            raise ValueError("test error")
        except ValueError:
            logger.exception("caught an error")
