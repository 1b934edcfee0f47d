from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionEndedError(AuthenticationError):
    """A refresh was refused; the client must sign in again (401).

    ``reason`` is for telemetry only. The response message is identical for
    every reason so clients cannot tell expiry from theft detection.
    """

    PUBLIC_MESSAGE = "session ended, please sign in again"

    def __init__(self, reason: str) -> None:
        super().__init__(self.PUBLIC_MESSAGE)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class LedgerUnavailableError(ServerError):
    """The token ledger could not be read or written (503).

    Credentials are never issued or rotated without a durable record, so
    this always fails the request.
    """
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionEndedError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "LedgerUnavailableError",
]
