"""Tests for structured logging functionality.

Tests logging configuration, context binding and the custom processors.
"""

import os

import pytest
import structlog

from entitlement_sync.logging_config import (
    APP_NAME,
    add_app_context,
    bind_context,
    clear_context,
    configure_logging,
    drop_debug_in_production,
    get_logger,
    is_debug_mode,
    redact_tokens,
    unbind_context,
)


@pytest.fixture(scope="module")
def setup_logging():
    """Configure logging for all tests in this module."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_format = os.getenv("LOG_FORMAT", "console")
    json_mode = log_format.lower() == "json"

    configure_logging(log_level=log_level, json_format=json_mode)
    yield


@pytest.fixture(autouse=True)
def cleanup_context():
    """Ensure context is cleared before and after each test."""
    clear_context()
    yield
    clear_context()


class TestBasicLogging:
    """Test basic logging at different levels."""

    def test_all_levels(self, setup_logging):
        """Logging at every level does not raise."""
        logger = get_logger("test.basic")

        logger.debug("Debug message", level="debug")
        logger.info("Info message", level="info")
        logger.warning("Warning message", level="warning")
        logger.error("Error message", level="error")

    def test_exception_logging(self, setup_logging):
        logger = get_logger("test.basic")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("Operation failed", operation="sync")

    @pytest.mark.parametrize("json_format", [True, False])
    def test_configure_formats(self, json_format):
        configure_logging(log_level="DEBUG", json_format=json_format, include_timestamp=False)
        get_logger("test.formats").info("configured", json_format=json_format)


class TestContextBinding:
    """Request context carried through contextvars."""

    def test_bind_context(self):
        bind_context(request_id="req-123", user_id="user-1")
        context = structlog.contextvars.get_contextvars()
        assert context["request_id"] == "req-123"
        assert context["user_id"] == "user-1"

    def test_none_values_are_not_bound(self):
        bind_context(request_id="req-123", product_id=None)
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-123"}

    def test_unbind_context(self):
        bind_context(request_id="req-123", user_id="user-1")
        unbind_context("user_id")
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-123"}

    def test_clear_context(self):
        bind_context(request_id="req-123")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestProcessors:
    """Custom processors in the structlog chain."""

    def test_add_app_context(self):
        assert add_app_context(None, "info", {"event": "x"})["app"] == APP_NAME

    def test_long_tokens_are_truncated(self):
        token = "abcdefghijklmnopqrstuvwxyz"
        event = redact_tokens(None, "info", {"event": "x", "token": token})
        assert event["token"] == "abcdefghijkl..."

    def test_all_token_keys_are_redacted(self):
        token = "x" * 40
        event = redact_tokens(
            None,
            "info",
            {"purchase_token": token, "linked_purchase_token": token, "user_id": token},
        )
        assert event["purchase_token"].endswith("...")
        assert event["linked_purchase_token"].endswith("...")
        assert event["user_id"] == token

    def test_short_and_missing_tokens_untouched(self):
        assert redact_tokens(None, "info", {"token": "short"})["token"] == "short"
        assert redact_tokens(None, "info", {"token": None})["token"] is None

    def test_debug_dropped_outside_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "INFO")
        with pytest.raises(structlog.DropEvent):
            drop_debug_in_production(None, "debug", {"event": "x"})
        assert drop_debug_in_production(None, "info", {"event": "x"}) == {"event": "x"}

    def test_debug_kept_in_debug_mode(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert is_debug_mode()
        assert drop_debug_in_production(None, "debug", {"event": "x"}) == {"event": "x"}
