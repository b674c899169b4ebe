from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Stable rejection kinds shared by results and exceptions."""

    VALIDATION = "validation"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[ErrorKind] = None

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
    kind = ErrorKind.VALIDATION


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthError(ServiceError):
    """Credentials or presented token unusable (401).

    Messages stay generic; callers must not learn whether the target exists.
    """
    status_code = 401
    error_code = "unauthorized"
    kind = ErrorKind.AUTH


class ForbiddenError(ServiceError):
    """Authenticated, but the actor kind is not allowed here (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = ErrorKind.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = ErrorKind.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = ErrorKind.RATE_LIMITED


class TransientError(ServiceError):
    """Store did not answer in time; safe to retry (503)."""
    status_code = 503
    error_code = "unavailable"
    kind = ErrorKind.TRANSIENT


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_ERROR_FOR_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.AUTH: AuthError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.TRANSIENT: TransientError,
}


def error_for_kind(kind: ErrorKind, message: str, detail: Optional[dict] = None) -> ServiceError:
    return _ERROR_FOR_KIND[kind](message, detail=detail)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a business operation: a value, or a rejection kind.

    Components return these for expected rejections (unknown token,
    already-revoked session, enabled policy retirement). The service
    boundary calls ``unwrap`` to turn a rejection into its ServiceError.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def reject(
        cls, kind: ErrorKind, message: str, detail: Optional[dict] = None
    ) -> "Outcome[T]":
        return cls(error=kind, message=message, detail=detail)

    def unwrap(self) -> T:
        if self.error is not None:
            raise error_for_kind(self.error, self.message or self.error.value, self.detail)
        return self.value  # type: ignore[return-value]


__all__ = [
    "ErrorKind",
    "Outcome",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TransientError",
    "ServerError",
    "error_for_kind",
]
