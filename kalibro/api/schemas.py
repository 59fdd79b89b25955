from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from kalibro.service.results import FailureKind

_GENERIC_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# Failure kinds double as error codes so clients can branch on them
_VALID_ERROR_CODES = _GENERIC_ERROR_CODES | frozenset(kind.value for kind in FailureKind)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
_OTP_PATTERN = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may contain only letters, digits, dots, underscores and hyphens")
    return value


def _validate_password_length(value: str) -> str:
    # Composition rules are enforced by the auth service
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_otp_code(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("code must be 6 digits")
    return value


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    all_devices: bool = False


class OtpRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)


class OtpVerifyRequest(OtpRequest):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp_code(value)


class PasswordResetConfirm(OtpVerifyRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class RegistrationComplete(OtpVerifyRequest):
    username: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_registration_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_registration_password(cls, value: str) -> str:
        return _validate_password_length(value)


class AccountResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    name: Optional[str] = None
    is_active: bool = True


class AuthResponse(BaseModel):
    account: AccountResponse
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class RefreshResponse(BaseModel):
    access_token: str
    session_id: str
    token_type: str = "bearer"
    expires_at: datetime


class LogoutResponse(BaseModel):
    logged_out: bool = True
    sessions_revoked: int = 0


class OtpRequestResponse(BaseModel):
    message: str
    masked_email: str
    expires_at: datetime


class OtpVerifyResponse(BaseModel):
    verified: bool = True


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionsRevokedResponse(BaseModel):
    sessions_revoked: int


class SecurityEventResponse(BaseModel):
    id: str
    type: str
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict = Field(default_factory=dict)


class SecurityEventListResponse(BaseModel):
    items: List[SecurityEventResponse]
