"""Tests for the MCP server middleware."""

import asyncio
from types import SimpleNamespace

import pytest
from structlog.testing import capture_logs

from pds_migrate.core.exceptions import MigrationError, MigrationValidationError
from pds_migrate.core.logging_config import REDACTED
from pds_migrate.middleware import ErrorHandlingMiddleware, LoggingMiddleware
from pds_migrate.models.enums import ErrorKind


class MockCall:
    """Mock call_next function for middleware testing."""

    def __init__(self, return_value=None, exception=None, delay=0):
        self.return_value = return_value
        self.exception = exception
        self.delay = delay
        self.call_count = 0

    async def __call__(self, context):
        self.call_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exception:
            raise self.exception
        return self.return_value


@pytest.fixture
def logging_middleware():
    return LoggingMiddleware(include_payloads=True, max_payload_length=50)


@pytest.fixture
def error_middleware():
    return ErrorHandlingMiddleware(include_traceback=False, track_error_stats=True)


class TestLoggingMiddleware:
    @pytest.mark.asyncio
    async def test_request_logging_success(self, logging_middleware, mock_context):
        call_next = MockCall(return_value={"status": "success"})

        with capture_logs() as logs:
            result = await logging_middleware.on_message(mock_context, call_next)

        assert result == {"status": "success"}
        assert call_next.call_count == 1
        events = [entry["event"] for entry in logs]
        assert events == ["MCP request started", "MCP request completed"]
        assert logs[1]["success"] is True

    @pytest.mark.asyncio
    async def test_request_logging_failure(self, logging_middleware, mock_context):
        call_next = MockCall(exception=ValueError("Test error"))

        with capture_logs() as logs:
            with pytest.raises(ValueError, match="Test error"):
                await logging_middleware.on_message(mock_context, call_next)

        failed = logs[-1]
        assert failed["event"] == "MCP request failed"
        assert failed["error_type"] == "ValueError"
        assert failed["success"] is False

    @pytest.mark.asyncio
    async def test_nested_secrets_redacted(self, logging_middleware, mock_context):
        with capture_logs() as logs:
            await logging_middleware.on_message(mock_context, MockCall(return_value={}))

        params = logs[0]["params"]
        assert params["name"] == "submit_migration"
        assert params["arguments"]["password"] == REDACTED
        assert params["arguments"]["did"] == "did:plc:abc123xyz"

    def test_sanitize_value(self, logging_middleware):
        value = {
            "plc_token": "emailed",
            "otp": "123456",
            "items": [{"auth_factor_token": "abc"}],
            "note": "x" * 80,
        }

        sanitized = logging_middleware._sanitize_value("arguments", value)

        assert sanitized["plc_token"] == REDACTED
        assert sanitized["items"][0]["auth_factor_token"] == REDACTED
        assert sanitized["note"] == "x" * 50 + "... [TRUNCATED]"

    def test_message_without_attributes(self, logging_middleware):
        assert logging_middleware._sanitize_message("y" * 80) == {"message": "y" * 50}

    @pytest.mark.asyncio
    async def test_payloads_can_be_disabled(self, mock_context):
        middleware = LoggingMiddleware(include_payloads=False)

        with capture_logs() as logs:
            await middleware.on_message(mock_context, MockCall(return_value={}))

        assert "params" not in logs[0]


class TestErrorHandlingMiddleware:
    @pytest.mark.asyncio
    async def test_success_passthrough(self, error_middleware, mock_context):
        result = await error_middleware.on_message(mock_context, MockCall(return_value="ok"))

        assert result == "ok"
        assert error_middleware.get_error_statistics()["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_error_reraised_and_counted(self, error_middleware, mock_context):
        for _ in range(2):
            with pytest.raises(ValueError):
                await error_middleware.on_message(mock_context, MockCall(exception=ValueError("bad")))

        stats = error_middleware.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["error_distribution"] == {"ValueError:tools/call": 2}
        assert stats["top_error_methods"] == [("tools/call", 2)]

    @pytest.mark.asyncio
    async def test_migration_error_logged_with_kind(self, error_middleware, mock_context):
        error = MigrationError(ErrorKind.RATE_LIMIT, "HTTP 429")

        with capture_logs() as logs:
            with pytest.raises(MigrationError):
                await error_middleware.on_message(mock_context, MockCall(exception=error))

        entry = logs[-1]
        assert entry["log_level"] == "warning"
        assert entry["error_kind"] == "rate_limit"
        assert entry["retryable"] is True

    @pytest.mark.asyncio
    async def test_message_context_leaves_out_arguments(self, error_middleware, mock_context):
        with capture_logs() as logs:
            with pytest.raises(ValueError):
                await error_middleware.on_message(mock_context, MockCall(exception=ValueError("bad")))

        assert logs[-1]["message_context"] == {"name": "submit_migration"}

    def test_error_levels(self, error_middleware):
        assert error_middleware._is_critical_error(MemoryError())
        assert error_middleware._is_critical_error(RecursionError())
        assert not error_middleware._is_critical_error(ValueError())

        assert error_middleware._is_warning_level_error(MigrationValidationError("bad DID"))
        assert error_middleware._is_warning_level_error(TimeoutError())
        assert error_middleware._is_warning_level_error(MigrationError(ErrorKind.NETWORK, "reset"))
        assert not error_middleware._is_warning_level_error(MigrationError(ErrorKind.CRITICAL_PLC, "boom"))
        assert not error_middleware._is_warning_level_error(ValueError())

    @pytest.mark.asyncio
    async def test_statistics_disabled(self, mock_context):
        middleware = ErrorHandlingMiddleware(track_error_stats=False)

        with pytest.raises(ValueError):
            await middleware.on_message(mock_context, MockCall(exception=ValueError("bad")))

        assert middleware.get_error_statistics() == {"error_tracking": "disabled"}

    @pytest.mark.asyncio
    async def test_reset_statistics(self, error_middleware, mock_context):
        with pytest.raises(ValueError):
            await error_middleware.on_message(mock_context, MockCall(exception=ValueError("bad")))

        error_middleware.reset_statistics()
        assert error_middleware.get_error_statistics()["total_errors"] == 0


class TestMessageShapes:
    def test_sanitize_message_skips_private_attributes(self, logging_middleware):
        message = SimpleNamespace(name="status", _internal="hidden", arguments={"token": "ABCD1234"})

        sanitized = logging_middleware._sanitize_message(message)

        assert sanitized == {"name": "status", "arguments": {"token": REDACTED}}
