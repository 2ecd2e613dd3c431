from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error kinds surfaced to callers of the auth engine."""

    VALIDATION = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_LOCKED = "account_locked"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    PASSWORD_EXPIRED = "password_expired"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    INVALID_2FA_CODE = "invalid_2fa_code"
    INVALID_TOKEN = "invalid_token"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SESSION_EXPIRED = "session_expired"
    WEAK_PASSWORD = "weak_password"
    USER_NOT_FOUND = "user_not_found"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CONFLICT = "conflict"


class ServiceError(Exception):
    """Base class for domain errors raised by the auth engine.

    Each subclass pins an ``ErrorKind`` plus the HTTP status a controller
    layer would most naturally map it to. ``detail`` carries structured data
    (validation messages, retry hints) instead of string-encoding it into the
    message.
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
    ) -> None:
        message = message or self.kind.value.replace("_", " ")
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}
        # Set once the failure has been written to the security event log
        self.audited = False

    @property
    def error_code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict:
        return {"code": self.error_code, "message": self.message, "details": self.detail}


class ValidationError(ServiceError):
    """Request shape is invalid (400)."""
    kind = ErrorKind.VALIDATION
    status_code = 400


class InvalidCredentialsError(ServiceError):
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401


class AccountSuspendedError(ServiceError):
    kind = ErrorKind.ACCOUNT_SUSPENDED
    status_code = 403


class AccountLockedError(ServiceError):
    kind = ErrorKind.ACCOUNT_LOCKED
    status_code = 423


class EmailNotVerifiedError(ServiceError):
    kind = ErrorKind.EMAIL_NOT_VERIFIED
    status_code = 403


class PasswordExpiredError(ServiceError):
    kind = ErrorKind.PASSWORD_EXPIRED
    status_code = 403


class TwoFactorRequiredError(ServiceError):
    """Password flow paused; the caller should resubmit with a 2FA code."""
    kind = ErrorKind.TWO_FACTOR_REQUIRED
    status_code = 401


class Invalid2FACodeError(ServiceError):
    kind = ErrorKind.INVALID_2FA_CODE
    status_code = 401


class InvalidTokenError(ServiceError):
    """Invalid, expired or already used token (401)."""
    kind = ErrorKind.INVALID_TOKEN
    status_code = 401


class RateLimitExceededError(ServiceError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    status_code = 429


class SessionExpiredError(ServiceError):
    kind = ErrorKind.SESSION_EXPIRED
    status_code = 401


class WeakPasswordError(ServiceError):
    kind = ErrorKind.WEAK_PASSWORD
    status_code = 400


class UserNotFoundError(ServiceError):
    kind = ErrorKind.USER_NOT_FOUND
    status_code = 404


class InsufficientPermissionsError(ServiceError):
    kind = ErrorKind.INSUFFICIENT_PERMISSIONS
    status_code = 403


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    kind = ErrorKind.CONFLICT
    status_code = 409


class ServiceUnavailableError(ServiceError):
    """A storage, crypto or delivery collaborator failed (503)."""
    kind = ErrorKind.SERVICE_UNAVAILABLE
    status_code = 503


_ERRORS_BY_KIND: dict[ErrorKind, type[ServiceError]] = {
    cls.kind: cls
    for cls in (
        ValidationError,
        InvalidCredentialsError,
        AccountSuspendedError,
        AccountLockedError,
        EmailNotVerifiedError,
        PasswordExpiredError,
        TwoFactorRequiredError,
        Invalid2FACodeError,
        InvalidTokenError,
        RateLimitExceededError,
        SessionExpiredError,
        WeakPasswordError,
        UserNotFoundError,
        InsufficientPermissionsError,
        ConflictError,
        ServiceUnavailableError,
    )
}


def error_for_kind(
    kind: ErrorKind, message: Optional[str] = None, *, detail: Optional[dict] = None
) -> ServiceError:
    """Build the exception instance matching an error kind."""
    return _ERRORS_BY_KIND[kind](message, detail=detail)


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountSuspendedError",
    "AccountLockedError",
    "EmailNotVerifiedError",
    "PasswordExpiredError",
    "TwoFactorRequiredError",
    "Invalid2FACodeError",
    "InvalidTokenError",
    "RateLimitExceededError",
    "SessionExpiredError",
    "WeakPasswordError",
    "UserNotFoundError",
    "InsufficientPermissionsError",
    "ConflictError",
    "ServiceUnavailableError",
    "error_for_kind",
]
