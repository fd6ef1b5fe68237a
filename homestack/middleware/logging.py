"""Request logging middleware for the homestack MCP server."""

import time
from typing import Any

from fastmcp.server.middleware import Middleware, MiddlewareContext

from ..core.logging_config import get_middleware_logger

# App env maps routinely carry database passwords and API keys
SENSITIVE_KEYWORDS = (
    "password",
    "passwd",
    "token",
    "secret",
    "credential",
    "authorization",
    "api_key",
    "env",
)


def is_sensitive_field(field_name: str) -> bool:
    field_lower = field_name.lower()
    return any(keyword in field_lower for keyword in SENSITIVE_KEYWORDS)


class LoggingMiddleware(Middleware):
    """Logs every MCP message with timing and sanitized parameters."""

    def __init__(self, include_payloads: bool = True, max_payload_length: int = 1000):
        self.logger = get_middleware_logger()
        self.include_payloads = include_payloads
        self.max_payload_length = max_payload_length

    async def on_message(self, context: MiddlewareContext, call_next):
        start_time = time.time()

        log_data: dict[str, Any] = {
            "method": context.method,
            "source": context.source,
            "message_type": context.type,
        }
        if self.include_payloads and hasattr(context.message, "__dict__"):
            log_data["params"] = self.sanitize_message(context.message)

        self.logger.info("MCP request started", **log_data)

        try:
            result = await call_next(context)
        except Exception as e:
            self.logger.error(
                "MCP request failed",
                method=context.method,
                success=False,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        self.logger.info(
            "MCP request completed",
            method=context.method,
            success=True,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result

    def sanitize_message(self, message: Any) -> dict[str, Any]:
        """Public attributes of ``message`` with secrets redacted and long values truncated."""
        if not hasattr(message, "__dict__"):
            return {"message": str(message)[: self.max_payload_length]}

        sanitized: dict[str, Any] = {}
        for key, value in message.__dict__.items():
            if key.startswith("_"):
                continue
            if is_sensitive_field(key):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = {
                    inner_key: "[REDACTED]" if is_sensitive_field(str(inner_key)) else inner_value
                    for inner_key, inner_value in value.items()
                }
            elif isinstance(value, str) and len(value) > self.max_payload_length:
                sanitized[key] = value[: self.max_payload_length] + "... [TRUNCATED]"
            else:
                sanitized[key] = value
        return sanitized
