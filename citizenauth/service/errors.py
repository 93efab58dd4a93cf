from __future__ import annotations

from typing import Optional

from citizenauth.config import ConfigurationError


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - token_expired (401)
    - forbidden (403)
    - account_not_active (403)
    - password_change_required (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - validation_error / password_policy (400)
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


class InvalidCredentials(AuthenticationError):
    """Unknown identifier or wrong password.

    The response never distinguishes the two. ``attempts_remaining`` is kept
    for logging and in-process callers only and never reaches ``detail``; the
    lock itself is reported through ``AccountLocked``.
    """

    def __init__(self, attempts_remaining: Optional[int] = None) -> None:
        super().__init__("invalid credentials")
        self.attempts_remaining = attempts_remaining


class TokenInvalid(AuthenticationError):
    """Access token failed signature, type, issuer or audience checks."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class TokenExpired(AuthenticationError):
    """Access token signature is valid but its ``exp`` has elapsed."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class RefreshInvalid(AuthenticationError):
    """Refresh token expired, revoked or unknown; callers cannot tell which."""

    def __init__(self, message: str = "invalid refresh token") -> None:
        super().__init__(message)


class ReuseDetected(RefreshInvalid):
    """A refresh token that was already rotated has been presented again."""

    def __init__(self, account_id: str, family_id: str) -> None:
        super().__init__()
        self.account_id = account_id
        self.family_id = family_id


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotActive(ForbiddenError):
    error_code = "account_not_active"

    def __init__(self, status: str) -> None:
        super().__init__("account is not active", detail={"status": status})
        self.status = status


class PasswordChangeRequired(ForbiddenError):
    """The account must set a new password before regular tokens are issued."""
    error_code = "password_change_required"

    def __init__(self) -> None:
        super().__init__("password change required")


class AccountLocked(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            "account temporarily locked",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class PasswordPolicyViolation(ValidationError):
    """New password rejected: too short/long, too simple, reused or unchanged."""
    error_code = "password_policy"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason.replace("_", " "), detail={"reason": reason})
        self.reason = reason


class PasswordResetInvalid(ValidationError):
    def __init__(self) -> None:
        super().__init__("invalid or expired reset token")


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenInvalid",
    "TokenExpired",
    "RefreshInvalid",
    "ReuseDetected",
    "ForbiddenError",
    "AccountNotActive",
    "PasswordChangeRequired",
    "AccountLocked",
    "PasswordPolicyViolation",
    "PasswordResetInvalid",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
]
