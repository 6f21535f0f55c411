from __future__ import annotations

from datetime import datetime
from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code`` so
    callers can branch on the machine-readable reason instead of the message.
    All of them are recoverable: retry with corrected input, wait out a lock,
    or request a fresh challenge.
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

    def __init__(
        self,
        message: str,
        *,
        field_errors: Optional[List[str]] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.field_errors = list(field_errors or [])
        merged = dict(detail or {})
        if self.field_errors:
            merged.setdefault("errors", self.field_errors)
        super().__init__(message, detail=merged)


class InvalidCredentialsError(ServiceError):
    """Email or password did not match (401).

    The message is identical whether the account exists or not.
    """
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str = "Invalid email or password",
        *,
        attempts_left: Optional[int] = None,
    ) -> None:
        self.attempts_left = attempts_left
        detail = {"attempts_left": attempts_left} if attempts_left is not None else None
        super().__init__(message, detail=detail)


class UnauthorizedError(ServiceError):
    """Authentication missing or invalid (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - ownership or role mismatch (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    """Account has been deactivated (403)."""
    error_code = "account_inactive"

    def __init__(self, message: str = "Account has been deactivated") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration email (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, lock_until: datetime, minutes_remaining: int) -> None:
        self.lock_until = lock_until
        self.minutes_remaining = minutes_remaining
        super().__init__(
            f"Account locked due to multiple failed login attempts. "
            f"Try again in {minutes_remaining} minutes.",
            detail={
                "lock_until": lock_until.isoformat(),
                "minutes_remaining": minutes_remaining,
            },
        )


class ChallengeInvalidError(ServiceError):
    """No usable one-time code matched (400)."""
    status_code = 400
    error_code = "invalid_or_expired"

    def __init__(self, message: str = "Invalid or expired verification code") -> None:
        super().__init__(message)


class TooManyAttemptsError(ServiceError):
    """One-time code attempt budget exhausted (429)."""
    status_code = 429
    error_code = "too_many_attempts"

    def __init__(
        self, message: str = "Too many attempts. Please request a new code."
    ) -> None:
        super().__init__(message)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "ForbiddenError",
    "AccountInactiveError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "ChallengeInvalidError",
    "TooManyAttemptsError",
    "ServerError",
]
