from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    """Stable machine-readable kinds for expected failures."""

    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    USER_NOT_FOUND = "user_not_found"
    USER_INACTIVE = "user_inactive"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    OTP_NOT_FOUND = "otp_not_found"
    OTP_EXPIRED = "otp_expired"
    OTP_MISMATCH = "otp_mismatch"
    OTP_ATTEMPTS_EXHAUSTED = "otp_attempts_exhausted"
    DELIVERY_FAILED = "delivery_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    INVALID_REFRESH = "invalid_refresh"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_EXISTS = "account_exists"
    WEAK_PASSWORD = "weak_password"


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ``Failure``; never both."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def kind(self) -> Optional[FailureKind]:
        return self.failure.kind if self.failure else None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: FailureKind, message: str, **detail: Any) -> "Result[T]":
        return cls(failure=Failure(kind=kind, message=message, detail=detail))


__all__ = ["Failure", "FailureKind", "Result"]
