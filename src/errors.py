"""Error taxonomy for checks-gateway.

Each error carries the HTTP status and the short response text the routes
return for it, so callers never need to inspect exception messages.
"""

from __future__ import annotations

import math


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP response."""

    http_status: int = 500
    response_text: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.response_text)

    def render(self) -> str:
        """Text returned to the caller; never includes internal details."""
        return self.response_text

    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(GatewayError):
    """Report payload failed validation; the message names the field."""

    http_status = 400
    response_text = "Validation error"

    def render(self) -> str:
        return f"Validation error: {self}"


class PayloadError(GatewayError):
    http_status = 400
    response_text = "Missing required payload data"


class UnsupportedOwnerError(GatewayError):
    http_status = 400
    response_text = "Unsupported repository owner."


class AuthenticationError(GatewayError):
    http_status = 401
    response_text = "Unauthorized"


class SignatureError(GatewayError):
    http_status = 401
    response_text = "Invalid signature"


class RateLimitedError(GatewayError):
    http_status = 429
    response_text = "Rate limit exceeded"


class ConfigurationError(GatewayError):
    """Missing or malformed secrets/credentials. Needs an operator."""

    http_status = 500
    response_text = "Configuration error"


class UpstreamError(GatewayError):
    """A call to GitHub or the dedup store failed."""

    http_status = 500
    response_text = "Internal error"


class GitHubError(UpstreamError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DedupStoreError(UpstreamError):
    pass


class CircuitOpenError(GatewayError):
    http_status = 503
    response_text = "Service temporarily unavailable"

    def __init__(self, retry_after: float = 0.0) -> None:
        super().__init__("Circuit breaker is OPEN")
        self.retry_after = retry_after

    def headers(self) -> dict[str, str]:
        # whole seconds, at least one
        return {"Retry-After": str(max(1, math.ceil(self.retry_after)))}
