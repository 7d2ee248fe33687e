from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - bad_credentials (401)
    - email_not_verified (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - illegal_state / validation_error / invalid_token (400)
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


class BadCredentialsError(ServiceError):
    """Unknown account, wrong password, or disabled principal (401).

    Deliberately conflated so callers cannot tell which check failed.
    """
    status_code = 401
    error_code = "bad_credentials"


class InvalidTokenError(BadCredentialsError):
    """Malformed, unsigned, expired, or mismatched bearer token (401)."""
    pass


class AccountLockedError(ServiceError):
    """Account is locked after repeated failures or by an administrator (423)."""
    status_code = 423
    error_code = "account_locked"


class EmailNotVerifiedError(ServiceError):
    """Login attempted before the email address was verified (403)."""
    status_code = 403
    error_code = "email_not_verified"


class ResourceNotFoundError(ServiceError):
    """Requested offer, chat, account or device not found (404)."""
    status_code = 404
    error_code = "not_found"


class IllegalStateError(ServiceError):
    """Operation not permitted in the current state or for this caller (400)."""
    status_code = 400
    error_code = "illegal_state"


class DuplicateResourceError(ServiceError):
    """Uniqueness violation, e.g. email or username already taken (409)."""
    status_code = 409
    error_code = "conflict"


class VerificationTokenError(ServiceError):
    """Email verification or password reset token is unknown (400)."""
    status_code = 400
    error_code = "invalid_token"


class VerificationTokenExpiredError(VerificationTokenError):
    """Email verification or password reset token has expired (400)."""
    pass


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadCredentialsError",
    "InvalidTokenError",
    "AccountLockedError",
    "EmailNotVerifiedError",
    "ResourceNotFoundError",
    "IllegalStateError",
    "DuplicateResourceError",
    "VerificationTokenError",
    "VerificationTokenExpiredError",
    "ServerError",
]
