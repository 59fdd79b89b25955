from __future__ import annotations

from typing import Optional

from kalibro.service.results import Failure, FailureKind


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a default
    error_code. Expected auth failures override error_code with their
    ``FailureKind`` value so clients can tell them apart.
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


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A backing store is unreachable (503)."""
    status_code = 503
    error_code = "store_unavailable"


_FAILURE_ERRORS: dict[FailureKind, tuple[type[ServiceError], Optional[int]]] = {
    FailureKind.MISSING_TOKEN: (AuthenticationError, None),
    FailureKind.INVALID_TOKEN: (AuthenticationError, None),
    FailureKind.TOKEN_EXPIRED: (AuthenticationError, None),
    FailureKind.USER_NOT_FOUND: (AuthenticationError, None),
    FailureKind.USER_INACTIVE: (AuthenticationError, None),
    FailureKind.INVALID_REFRESH: (AuthenticationError, None),
    FailureKind.INVALID_CREDENTIALS: (AuthenticationError, None),
    FailureKind.FORBIDDEN: (ForbiddenError, None),
    FailureKind.RATE_LIMITED: (RateLimitedError, None),
    FailureKind.OTP_NOT_FOUND: (ValidationError, None),
    FailureKind.OTP_EXPIRED: (ValidationError, None),
    FailureKind.OTP_MISMATCH: (ValidationError, None),
    FailureKind.OTP_ATTEMPTS_EXHAUSTED: (ValidationError, None),
    FailureKind.WEAK_PASSWORD: (ValidationError, None),
    FailureKind.ACCOUNT_NOT_FOUND: (NotFoundError, None),
    FailureKind.ACCOUNT_EXISTS: (ConflictError, None),
    FailureKind.DELIVERY_FAILED: (ServerError, 502),
    FailureKind.STORE_UNAVAILABLE: (ServiceUnavailableError, None),
}


def error_for_failure(failure: Failure) -> ServiceError:
    """Translate an expected failure into the exception the API layer raises."""
    error_cls, status_code = _FAILURE_ERRORS.get(failure.kind, (ServerError, None))
    return error_cls(
        failure.message,
        status_code=status_code,
        detail=dict(failure.detail),
        error_code=failure.kind.value,
    )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "error_for_failure",
]
