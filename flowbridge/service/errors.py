from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - upstream_error (502)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request or instance configuration is malformed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential header missing or wrong (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Unknown instance (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Instance id already taken (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InitializationError(ServerError):
    """The messaging client for an instance could not be constructed."""


class SendError(ServerError):
    """The connection handle failed to deliver an outbound message."""


class UpstreamError(ServiceError):
    """Remote workflow engine or fallback model failed.

    Raised inside the AI response pipeline only; the fallback chain always
    recovers from it for inbound processing.
    """
    status_code = 502
    error_code = "upstream_error"


class UnavailableError(ServiceError):
    """Instance exists but has no live connection (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InitializationError",
    "SendError",
    "UpstreamError",
    "UnavailableError",
]
