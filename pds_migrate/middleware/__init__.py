"""FastMCP middleware for the migration MCP server.

- LoggingMiddleware: Structured request logging with secrets redacted
- ErrorHandlingMiddleware: Error tracking and categorization
"""

from .error_handling import ErrorHandlingMiddleware
from .logging import LoggingMiddleware

__all__ = [
    "LoggingMiddleware",
    "ErrorHandlingMiddleware",
]
