"""Tests for homestack request middleware."""

from types import SimpleNamespace

import pytest

from homestack.core.exceptions import ComposeCommandError, OperationValidationError
from homestack.middleware import ErrorHandlingMiddleware, LoggingMiddleware
from homestack.middleware.logging import is_sensitive_field

from .conftest import MockCall


class TestLoggingMiddleware:
    """Test suite for LoggingMiddleware."""

    async def test_request_logging_success(self, logging_middleware, mock_context):
        call_next = MockCall(return_value={"success": True, "operation_id": "op-1"})

        result = await logging_middleware.on_message(mock_context, call_next)

        assert result == {"success": True, "operation_id": "op-1"}
        assert call_next.call_count == 1

    async def test_request_logging_failure(self, logging_middleware, mock_context):
        call_next = MockCall(exception=ValueError("Test error"))

        with pytest.raises(ValueError, match="Test error"):
            await logging_middleware.on_message(mock_context, call_next)

    def test_env_and_secrets_are_redacted(self):
        middleware = LoggingMiddleware(include_payloads=True, max_payload_length=500)
        message = SimpleNamespace(
            name="store_app",
            api_key="sk-12345",
            arguments={"app_id": "immich", "env": {"DB_PASSWORD": "hunter2"}},
            _private="hidden",
        )

        sanitized = middleware.sanitize_message(message)

        assert sanitized["name"] == "store_app"
        assert sanitized["api_key"] == "[REDACTED]"
        assert sanitized["arguments"] == {"app_id": "immich", "env": "[REDACTED]"}
        assert "_private" not in sanitized

    def test_large_payload_truncation(self):
        middleware = LoggingMiddleware(max_payload_length=10)
        sanitized = middleware.sanitize_message(SimpleNamespace(compose_source="x" * 50))
        assert sanitized["compose_source"] == "x" * 10 + "... [TRUNCATED]"

    @pytest.mark.parametrize(
        "field,expected",
        [
            ("password", True),
            ("DB_PASSWORD", True),
            ("api_key", True),
            ("env", True),
            ("app_id", False),
            ("web_ui_port", False),
        ],
    )
    def test_sensitive_fields(self, field, expected):
        assert is_sensitive_field(field) is expected


class TestErrorHandlingMiddleware:
    """Test suite for ErrorHandlingMiddleware."""

    async def test_error_catching_and_reraising(self, error_handling_middleware, mock_context):
        call_next = MockCall(exception=ComposeCommandError("compose exploded"))

        with pytest.raises(ComposeCommandError, match="compose exploded"):
            await error_handling_middleware.on_message(mock_context, call_next)

    async def test_success_passes_through(self, error_handling_middleware, mock_context):
        result = await error_handling_middleware.on_message(mock_context, MockCall())
        assert result == {"status": "success"}
        assert error_handling_middleware.get_error_statistics()["total_errors"] == 0

    async def test_error_statistics_tracking(self, error_handling_middleware, mock_context):
        for _ in range(3):
            with pytest.raises(ValueError):
                await error_handling_middleware.on_message(
                    mock_context, MockCall(exception=ValueError("bad"))
                )
        with pytest.raises(RuntimeError):
            await error_handling_middleware.on_message(
                mock_context, MockCall(exception=RuntimeError("worse"))
            )

        stats = error_handling_middleware.get_error_statistics()
        assert stats["total_errors"] == 4
        assert stats["unique_error_types"] == 2
        assert stats["top_errors"][0] == ("ValueError:tools/call", 3)

        error_handling_middleware.reset_statistics()
        assert error_handling_middleware.get_error_statistics()["total_errors"] == 0

    def test_statistics_disabled(self):
        middleware = ErrorHandlingMiddleware(track_error_stats=False)
        assert middleware.get_error_statistics() == {"error_tracking": "disabled"}

    @pytest.mark.parametrize(
        "error,expected",
        [
            (OperationValidationError("webUiPort must be an integer"), True),
            (ValueError("bad"), True),
            (TimeoutError("slow"), True),
            (PermissionError("denied"), True),
            (ComposeCommandError("exit code 1"), False),
            (RuntimeError("bug"), False),
        ],
    )
    def test_warning_level_errors(self, error, expected):
        assert ErrorHandlingMiddleware.is_warning_level_error(error) is expected
