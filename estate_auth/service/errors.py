from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RefreshTokenError(AuthenticationError):
    """Refresh token rejected during rotation; ``reason`` is "invalid" or "expired"."""

    def __init__(self, reason: str) -> None:
        message = "refresh token expired" if reason == "expired" else "invalid refresh token"
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class LockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, remaining_minutes: int) -> None:
        super().__init__(
            f"account locked, try again in {remaining_minutes} minute(s)",
            detail={"remaining_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "too many attempts, try again later") -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class InternalError(ServiceError):
    """Storage or signing failure (500); never carries internal detail."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RefreshTokenError",
    "NotFoundError",
    "LockedError",
    "RateLimitedError",
    "InternalError",
]
