from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so a transport layer can map it without inspecting messages:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - account_locked (423)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown user or wrong password; the two are not distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, remaining_attempts: Optional[int] = None) -> None:
        if remaining_attempts is None:
            message = "Invalid credentials"
            detail = {}
        else:
            message = f"Invalid credentials. {remaining_attempts} attempts remaining."
            detail = {"remaining_attempts": remaining_attempts}
        super().__init__(message, detail=detail)
        self.remaining_attempts = remaining_attempts


class AccountLockedError(ServiceError):
    """Account is inside its lockout window (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_minutes: int, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or f"Account is locked. Please try again after {remaining_minutes} minutes.",
            detail={"remaining_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class OtpExpiredError(ValidationError):
    error_code = "otp_expired"

    def __init__(self) -> None:
        super().__init__("OTP has expired. Please request a new one.")


class OtpInvalidError(ValidationError):
    error_code = "otp_invalid"

    def __init__(self, remaining_attempts: int = 0, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Invalid OTP. {remaining_attempts} attempts remaining.",
            detail={"remaining_attempts": remaining_attempts},
        )
        self.remaining_attempts = remaining_attempts


class OtpMaxAttemptsExceededError(AccountLockedError):
    """Raised once an OTP challenge has no attempts left; the account is locked."""
    error_code = "otp_max_attempts_exceeded"

    def __init__(self, remaining_minutes: int) -> None:
        super().__init__(
            remaining_minutes,
            "Maximum OTP attempts exceeded. Account locked for "
            f"{remaining_minutes} minutes.",
        )


class InvalidTokenError(AuthenticationError):
    """Malformed, expired, tampered and revoked tokens share one message."""
    error_code = "invalid_token"

    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


class SessionInactiveError(AuthenticationError):
    error_code = "session_inactive"

    def __init__(self) -> None:
        super().__init__("Session is no longer active")


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"

    def __init__(self) -> None:
        super().__init__("Session not found")


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class NotificationError(ServiceError):
    """Outbound notification gateway rejected or failed a send (502)."""
    status_code = 502
    error_code = "notification_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "OtpExpiredError",
    "OtpInvalidError",
    "OtpMaxAttemptsExceededError",
    "InvalidTokenError",
    "SessionInactiveError",
    "ForbiddenError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "NotificationError",
]
