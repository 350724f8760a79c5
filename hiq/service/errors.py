from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - out_of_window (403)
    - invalid_state (400)
    - token_used / token_expired / too_many_attempts (400)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidStateError(ServiceError):
    """Entity exists but is in the wrong lifecycle state (400)."""
    status_code = 400
    error_code = "invalid_state"


class TokenAlreadyUsedError(ServiceError):
    """Registration token was already consumed (400)."""
    status_code = 400
    error_code = "token_used"


class TokenExpiredError(ServiceError):
    """Registration token is past its expiry (400)."""
    status_code = 400
    error_code = "token_expired"


class TooManyAttemptsError(ServiceError):
    """Registration token is locked after repeated failures (400)."""
    status_code = 400
    error_code = "too_many_attempts"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class OutOfWindowError(ForbiddenError):
    """Time-based access rule not satisfied (403)."""
    error_code = "out_of_window"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
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


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "TokenAlreadyUsedError",
    "TokenExpiredError",
    "TooManyAttemptsError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "OutOfWindowError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
