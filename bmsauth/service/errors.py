from __future__ import annotations

from typing import Optional

from bmsauth.storage.errors import ConstraintViolation, DuplicateIdentifier


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` alongside the HTTP status so
    clients can branch on the code rather than on message text.
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


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class Unauthenticated(ServiceError):
    """No authenticated principal on the request (401)."""
    status_code = 401
    error_code = "unauthorized"


class Forbidden(ServiceError):
    """Authenticated, but the role is not in the allowed set (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidCredentials(ServiceError):
    """Unknown identifier or wrong password; the two are indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class MfaRequired(ServiceError):
    """Password accepted; a second factor is owed before credentials are issued."""
    status_code = 401
    error_code = "mfa_required"


class InvalidMfaCode(ServiceError):
    status_code = 401
    error_code = "invalid_mfa_code"


class NoPendingMfa(ServiceError):
    """Second factor submitted without a live challenge (400)."""
    status_code = 400
    error_code = "no_pending_mfa"


class InvalidToken(ServiceError):
    status_code = 401
    error_code = "invalid_token"


class ExpiredToken(InvalidToken):
    error_code = "expired_token"


class TooManyAttempts(ServiceError):
    """Login or MFA throttle tripped (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many attempts", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "Unauthenticated",
    "Forbidden",
    "InvalidCredentials",
    "MfaRequired",
    "InvalidMfaCode",
    "NoPendingMfa",
    "InvalidToken",
    "ExpiredToken",
    "TooManyAttempts",
    "ServerError",
    "ConstraintViolation",
    "DuplicateIdentifier",
]
