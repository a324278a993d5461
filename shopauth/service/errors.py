from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:

    - bad_credentials (401)
    - account_locked (423)
    - invalid_token (401)
    - invalid_or_expired_code (401)
    - duplicate_resource (409)
    - not_found (404)
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
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


class BadCredentialsError(AuthenticationError):
    """Unknown email, wrong password or inactive account.

    Deliberately generic so callers cannot tell which check failed.
    """
    error_code = "bad_credentials"


class AccountLockedError(ServiceError):
    """Credentials were valid but an administrator locked the account (423)."""
    status_code = 423
    error_code = "account_locked"


class InvalidTokenError(AuthenticationError):
    """Refresh token unusable, or access token failed verification (401)."""
    error_code = "invalid_token"


class InvalidOrExpiredCodeError(AuthenticationError):
    """OAuth2 one-time code missing, already consumed or past its TTL (401)."""
    error_code = "invalid_or_expired_code"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ResourceNotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateResourceError(ServiceError):
    """Email or username already registered (409)."""
    status_code = 409
    error_code = "duplicate_resource"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "BadCredentialsError",
    "AccountLockedError",
    "InvalidTokenError",
    "InvalidOrExpiredCodeError",
    "ForbiddenError",
    "ResourceNotFoundError",
    "DuplicateResourceError",
    "ServerError",
]
