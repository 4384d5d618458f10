"""Shared error definitions for the gateway.

Exceptions raised by the upstream transport, and the mapping from upstream
status codes to Anthropic error types.
"""

# Error type mapping from upstream status to Anthropic error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "overloaded_error",
    504: "api_error",
    529: "overloaded_error",
}


def error_type_for_status(status_code: int) -> str:
    return ERROR_TYPE_MAP.get(status_code, "api_error")


class GatewayError(Exception):
    """Base class for gateway errors."""

    error_type = "api_error"
    status_code = 502


class UpstreamUnreachable(GatewayError):
    """Raised when the upstream cannot be reached before any bytes arrive."""


class CircuitOpenError(GatewayError):
    """Raised when circuit breaker is open."""

    status_code = 503


class UpstreamError(GatewayError):
    """Raised when upstream API returns a non-success status."""

    def __init__(self, message: str, status_code: int, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.error_type = error_type_for_status(status_code)
