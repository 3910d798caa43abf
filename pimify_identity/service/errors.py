from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Type


class ErrorKind(str, Enum):
    """Closed set of failure kinds reported by the identity services."""

    AUTH_INVALID_CREDENTIALS = "AUTH_INVALID_CREDENTIALS"
    AUTH_ACCOUNT_LOCKED = "AUTH_ACCOUNT_LOCKED"
    AUTH_ACCOUNT_SUSPENDED = "AUTH_ACCOUNT_SUSPENDED"
    AUTH_ACCOUNT_INACTIVE = "AUTH_ACCOUNT_INACTIVE"
    AUTH_REQUIRES_2FA = "AUTH_REQUIRES_2FA"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_INVALID_REFRESH = "AUTH_INVALID_REFRESH"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_CONSUMED = "TOKEN_CONSUMED"
    TWO_FACTOR_NOT_ENABLED = "TWO_FACTOR_NOT_ENABLED"
    TWO_FACTOR_ALREADY_ENABLED = "TWO_FACTOR_ALREADY_ENABLED"
    TWO_FACTOR_INVALID_CODE = "TWO_FACTOR_INVALID_CODE"
    INVITE_ALREADY_PENDING = "INVITE_ALREADY_PENDING"
    INVITE_USER_EXISTS = "INVITE_USER_EXISTS"
    INVITE_EXPIRED = "INVITE_EXPIRED"
    INVITE_INVALID = "INVITE_INVALID"
    INVITE_ALREADY_USED = "INVITE_ALREADY_USED"
    INVITE_NOT_FOUND = "INVITE_NOT_FOUND"
    PERMISSION_NOT_FOUND = "PERMISSION_NOT_FOUND"
    LAST_ADMIN = "LAST_ADMIN"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
    DIRECTORY_UNAVAILABLE = "DIRECTORY_UNAVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``kind`` is the stable error code callers branch on; ``status_code`` is
    the HTTP status the boundary uses for it.
    """

    status_code: int = 400
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = ErrorKind(kind)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    kind = ErrorKind.VALIDATION_ERROR


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    kind = ErrorKind.AUTH_INVALID_TOKEN


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    kind = ErrorKind.AUTH_FORBIDDEN


class NotFoundError(ServiceError):
    status_code = 404
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """State conflict, e.g. a duplicate or an already-used token (409)."""
    status_code = 409
    kind = ErrorKind.VALIDATION_ERROR


class GoneError(ServiceError):
    """Single-use credential expired or consumed (410)."""
    status_code = 410
    kind = ErrorKind.TOKEN_EXPIRED


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    @property
    def retry_after_ms(self) -> int:
        return int(self.detail.get("retry_after_ms", 0))


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    kind = ErrorKind.INTERNAL_ERROR


class ConfigurationError(ServiceError):
    """Directory or SSO integration not set up or unreachable (503)."""
    status_code = 503
    kind = ErrorKind.NOT_CONFIGURED


_KIND_TO_ERROR: Dict[ErrorKind, Type[ServiceError]] = {
    ErrorKind.AUTH_INVALID_CREDENTIALS: AuthenticationError,
    ErrorKind.AUTH_REQUIRES_2FA: AuthenticationError,
    ErrorKind.AUTH_INVALID_TOKEN: AuthenticationError,
    ErrorKind.AUTH_INVALID_REFRESH: AuthenticationError,
    ErrorKind.TWO_FACTOR_INVALID_CODE: AuthenticationError,
    ErrorKind.AUTH_ACCOUNT_LOCKED: ForbiddenError,
    ErrorKind.AUTH_ACCOUNT_SUSPENDED: ForbiddenError,
    ErrorKind.AUTH_ACCOUNT_INACTIVE: ForbiddenError,
    ErrorKind.AUTH_FORBIDDEN: ForbiddenError,
    ErrorKind.RATE_LIMIT_EXCEEDED: RateLimitedError,
    ErrorKind.TOKEN_EXPIRED: GoneError,
    ErrorKind.TOKEN_CONSUMED: GoneError,
    ErrorKind.INVITE_EXPIRED: GoneError,
    ErrorKind.INVITE_ALREADY_PENDING: ConflictError,
    ErrorKind.INVITE_USER_EXISTS: ConflictError,
    ErrorKind.INVITE_ALREADY_USED: ConflictError,
    ErrorKind.TWO_FACTOR_ALREADY_ENABLED: ConflictError,
    ErrorKind.TWO_FACTOR_NOT_ENABLED: ConflictError,
    ErrorKind.LAST_ADMIN: ConflictError,
    ErrorKind.SYNC_IN_PROGRESS: ConflictError,
    ErrorKind.INVITE_INVALID: ValidationError,
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.INVITE_NOT_FOUND: NotFoundError,
    ErrorKind.PERMISSION_NOT_FOUND: NotFoundError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.NOT_CONFIGURED: ConfigurationError,
    ErrorKind.DIRECTORY_UNAVAILABLE: ConfigurationError,
    ErrorKind.INTERNAL_ERROR: ServerError,
}


def error_for(kind: ErrorKind, message: Optional[str] = None, **detail) -> ServiceError:
    """Build the ServiceError subclass that carries ``kind``."""
    kind = ErrorKind(kind)
    cls = _KIND_TO_ERROR.get(kind, ServiceError)
    return cls(message or kind.value.lower().replace("_", " "), kind=kind, detail=detail)


def status_for(kind: ErrorKind) -> int:
    return _KIND_TO_ERROR.get(ErrorKind(kind), ServiceError).status_code


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "ErrorKind",
    "ForbiddenError",
    "GoneError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "ValidationError",
    "error_for",
    "status_for",
]
