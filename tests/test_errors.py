"""
Tests for error types and Sentry reporting.
"""

from unittest.mock import patch

import pytest

from partnermatch.core import errors
from partnermatch.core.errors import (
    CircuitOpenError,
    CircuitOperationError,
    PartnerMatchError,
    RetryError,
    capture_exception,
    capture_message,
    init_sentry,
)


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_hierarchy(self):
        for exc_type in (CircuitOpenError, CircuitOperationError, RetryError):
            assert issubclass(exc_type, PartnerMatchError)

    def test_circuit_open_error(self):
        exc = CircuitOpenError("apollo-api", 1500)
        assert exc.circuit == "apollo-api"
        assert exc.retry_after_seconds == 2
        assert str(exc) == "Circuit breaker OPEN for apollo-api"

    def test_retry_error(self):
        exc = RetryError("HTTP 503: down", attempts=4, final_status=503)
        assert exc.attempts == 4
        assert exc.final_status == 503
        assert str(exc) == "HTTP 503: down"


class TestSentry:
    """Tests for Sentry initialization and capture."""

    def test_init_without_dsn_is_disabled(self):
        with patch("partnermatch.core.errors.sentry_sdk.init") as mock_init:
            assert init_sentry("") is False
        mock_init.assert_not_called()

    def test_init_with_dsn(self):
        with patch("partnermatch.core.errors.sentry_sdk.init") as mock_init, patch.object(
            errors, "_sentry_initialized", False
        ):
            assert init_sentry("https://key@sentry.example.com/1", environment="staging") is True
            assert errors.is_sentry_enabled() is True
        assert mock_init.call_args.kwargs["environment"] == "staging"

    def test_init_failure_returns_false(self):
        with patch("partnermatch.core.errors.sentry_sdk.init", side_effect=ValueError("bad dsn")), patch.object(
            errors, "_sentry_initialized", False
        ):
            assert init_sentry("not-a-dsn") is False
            assert errors.is_sentry_enabled() is False

    def test_capture_without_sentry_only_logs(self):
        with patch.object(errors, "_sentry_initialized", False), patch(
            "partnermatch.core.errors.sentry_sdk.capture_exception"
        ) as mock_capture:
            assert capture_exception(RuntimeError("boom"), context={"provider": "x"}) is None
        mock_capture.assert_not_called()

    def test_capture_exception_forwards_to_sentry(self):
        with patch.object(errors, "_sentry_initialized", True), patch(
            "partnermatch.core.errors.sentry_sdk.capture_exception", return_value="evt-1"
        ) as mock_capture:
            event_id = capture_exception(RuntimeError("boom"), context={"provider": "x"}, tags={"area": "signals"})

        assert event_id == "evt-1"
        mock_capture.assert_called_once()

    @pytest.mark.parametrize("level", ["info", "warning", "error"])
    def test_capture_message_forwards_level(self, level):
        with patch.object(errors, "_sentry_initialized", True), patch(
            "partnermatch.core.errors.sentry_sdk.capture_message", return_value="evt-2"
        ) as mock_capture:
            assert capture_message("Circuit breaker opened", level=level, context={"circuit": "a"}) == "evt-2"

        assert mock_capture.call_args.kwargs["level"] == level

    def test_sentry_failure_is_swallowed(self):
        with patch.object(errors, "_sentry_initialized", True), patch(
            "partnermatch.core.errors.sentry_sdk.capture_message", side_effect=RuntimeError("transport down")
        ):
            assert capture_message("hello") is None
