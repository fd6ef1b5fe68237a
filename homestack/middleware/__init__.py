"""FastMCP middleware for the homestack server.

- LoggingMiddleware: request/response logging with redacted parameters
- ErrorHandlingMiddleware: error classification and per-method statistics
"""

from .error_handling import ErrorHandlingMiddleware
from .logging import LoggingMiddleware

__all__ = ["ErrorHandlingMiddleware", "LoggingMiddleware"]
