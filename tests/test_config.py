"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from kalibro.config import Settings, get_settings, reset_settings_cache

ACCESS = "config-access-secret-0123456789abcdefghij"
REFRESH = "config-refresh-secret-0123456789abcdefghij"


class TestSettings:
    def test_secrets_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False, jwt_secret=None, jwt_refresh_secret=None)

    def test_test_mode_fills_missing_secrets(self):
        settings = Settings(test_mode=True, jwt_secret=None, jwt_refresh_secret=None)
        assert settings.jwt_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_secret != settings.jwt_refresh_secret

    def test_secrets_must_differ(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False, jwt_secret=ACCESS, jwt_refresh_secret=ACCESS)

    def test_ttl_conversions(self):
        settings = Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 604800

    def test_access_must_expire_before_refresh(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret=ACCESS,
                jwt_refresh_secret=REFRESH,
                access_token_ttl_minutes=2 * 24 * 60,
                refresh_token_ttl_days=1,
            )

    def test_non_positive_limits_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH, otp_max_attempts=0)

    def test_proxy_trust_is_off_by_default(self):
        settings = Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)
        assert settings.trusted_proxy_count == 0
        assert settings.email_dev_mode is False
        with pytest.raises(ValidationError):
            Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH, trusted_proxy_count=-1)


class TestFromEnv:
    def test_reads_named_environment_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
        monkeypatch.setenv("OTP_TTL_MINUTES", "5")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("REDIS_URL", "   ")
        monkeypatch.setenv("TRUSTED_PROXY_COUNT", "2")

        settings = Settings.from_env()
        assert settings.otp_ttl_minutes == 5
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.redis_url is None
        assert settings.trusted_proxy_count == 2

    def test_settings_cache_resets(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOGIN_RATE_LIMIT", "9")
        assert get_settings().login_rate_limit == first.login_rate_limit
        reset_settings_cache()
        assert get_settings().login_rate_limit == 9
        reset_settings_cache()
