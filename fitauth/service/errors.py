from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
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


class InvalidPasswordError(ValidationError):
    """Password re-confirmation failed for a sensitive operation (400)."""
    error_code = "invalid_password"

    def __init__(self, message: str = "Invalid password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match; never says which half was wrong."""

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Token signature, format, type or server-side record is invalid (401)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token reached its signed expiry (401)."""
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(ServiceError):
    """Two-factor code or backup code rejected (400)."""
    status_code = 400
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid 2FA token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is locked after repeated failed logins (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests",
        *,
        retry_after: int = 0,
        headers: Optional[dict] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after
        self.headers = headers or {}


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
