from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kalibro.logging import get_logger

logger = get_logger(__name__)

# Fixed secrets used only when TEST_MODE is on and no secret is configured
_TEST_ACCESS_SECRET = "kalibro-test-access-secret-not-for-production-use"
_TEST_REFRESH_SECRET = "kalibro-test-refresh-secret-not-for-production-use"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    database_url: str = env_field(
        "postgresql://localhost:5432/kalibro", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("kalibro-library", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token and session lifetime in days"
    )
    auth_cookie_name: str = env_field("client_token", "AUTH_COOKIE_NAME")
    refresh_cookie_name: str = env_field("client_refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # One-time passwords
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_rate_limit: int = env_field(
        5, "OTP_RATE_LIMIT", description="OTP requests allowed per identifier per window"
    )
    otp_rate_window_minutes: int = env_field(15, "OTP_RATE_WINDOW_MINUTES")
    login_rate_limit: int = env_field(
        5, "LOGIN_RATE_LIMIT", description="Failed logins allowed per client IP per window"
    )
    login_rate_window_minutes: int = env_field(15, "LOGIN_RATE_WINDOW_MINUTES")
    # Security event log
    security_log_ttl_days: int = env_field(30, "SECURITY_LOG_TTL_DAYS")
    security_log_max_per_user: int = env_field(100, "SECURITY_LOG_MAX_PER_USER")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Kalibro Library", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    trusted_proxy_count: int = env_field(
        0,
        "TRUSTED_PROXY_COUNT",
        description="Reverse proxies in front of the app whose X-Forwarded-For entries are trusted",
    )
    email_dev_mode: bool = env_field(
        False, "EMAIL_DEV_MODE", description="Accept OTP mail without SMTP configured"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "otp_rate_limit",
        "otp_rate_window_minutes",
        "login_rate_limit",
        "login_rate_window_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("trusted_proxy_count")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self):
        if not self.jwt_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            logger.warning("jwt_secret_test_default", test_mode=True)
            self.jwt_secret = self.jwt_secret or _TEST_ACCESS_SECRET
            self.jwt_refresh_secret = self.jwt_refresh_secret or _TEST_REFRESH_SECRET
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if len(self.jwt_secret) < 32 or len(self.jwt_refresh_secret) < 32:
            logger.warning("jwt_secret_short", min_length=32)
        if self.access_token_ttl_minutes >= self.refresh_token_ttl_days * 24 * 60:
            raise ValueError("access tokens must expire well before refresh tokens")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
