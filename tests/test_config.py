"""Settings loading from the environment and field validation."""

import pytest
from pydantic import ValidationError

from sysauth.config import DEFAULT_LOCKOUT_DELAYS, Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in (
        "JWT_SECRET",
        "LOCKOUT_PROGRESSIVE_DELAYS",
        "DEVICE_APPROVAL_MAX_ATTEMPTS",
        "CORS_ALLOW_ORIGINS",
        "CAPTCHA_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield monkeypatch
    reset_settings_cache()


class TestDefaults:
    def test_defaults(self):
        settings = Settings(jwt_secret="secret")
        assert settings.lockout_progressive_delays == DEFAULT_LOCKOUT_DELAYS
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.remember_me_ttl_days == 30
        assert settings.device_approval_expiry_minutes == 30
        assert settings.device_approval_max_attempts == 3
        assert settings.device_approval_resend_cooldown_seconds == 60
        assert settings.mfa_max_attempts == 5
        assert settings.mfa_lockout_seconds == 300

    def test_missing_jwt_secret_is_generated(self):
        first = Settings()
        second = Settings()
        assert len(first.jwt_secret) > 32
        assert first.jwt_secret != second.jwt_secret


class TestFromEnv:
    def test_reads_environment(self, clean_env):
        clean_env.setenv("JWT_SECRET", "from-env")
        clean_env.setenv("DEVICE_APPROVAL_MAX_ATTEMPTS", "5")
        clean_env.setenv("CAPTCHA_ENABLED", "true")
        settings = Settings.from_env()
        assert settings.jwt_secret == "from-env"
        assert settings.device_approval_max_attempts == 5
        assert settings.captcha_enabled is True

    def test_csv_lists(self, clean_env):
        clean_env.setenv("LOCKOUT_PROGRESSIVE_DELAYS", "0, 0, 30,60")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.lockout_progressive_delays == [0, 0, 30, 60]
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_dotenv_file_is_fallback(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("JWT_SECRET=from-dotenv\nMFA_MAX_ATTEMPTS=7\n")
        clean_env.setenv("MFA_MAX_ATTEMPTS", "4")
        settings = Settings.from_env()
        assert settings.jwt_secret == "from-dotenv"
        assert settings.mfa_max_attempts == 4

    def test_get_settings_is_cached(self, clean_env):
        clean_env.setenv("JWT_SECRET", "cached")
        assert get_settings() is get_settings()
        reset_settings_cache()
        clean_env.setenv("JWT_SECRET", "changed")
        assert get_settings().jwt_secret == "changed"


class TestLockoutDelayValidation:
    @pytest.mark.parametrize("delays", [[], [0, -1], [0, 60, 30]])
    def test_rejects_invalid_schedules(self, delays):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="secret", lockout_progressive_delays=delays)

    def test_rejects_empty_csv(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="secret", lockout_progressive_delays=" , ")


class TestSessionMarkerLifetimes:
    def test_default_flag_outlives_access_tokens(self):
        settings = Settings(jwt_secret="secret")
        assert settings.access_token_max_age_seconds == 15 * 60 + 120
        assert settings.force_reauth_ttl_minutes * 60 > settings.access_token_max_age_seconds

    @pytest.mark.parametrize(
        "overrides",
        [
            {"force_reauth_ttl_minutes": 15},
            {"force_reauth_ttl_minutes": 20, "access_token_ttl_minutes": 30},
            {"force_reauth_ttl_minutes": 20, "jwt_clock_skew_seconds": 600},
            {"jwt_clock_skew_seconds": -1},
        ],
    )
    def test_rejects_flags_shorter_than_token_lifetime(self, overrides):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="secret", **overrides)

    def test_longer_access_tokens_with_matching_flag(self):
        settings = Settings(
            jwt_secret="secret", access_token_ttl_minutes=30, force_reauth_ttl_minutes=35
        )
        assert settings.access_token_max_age_seconds == 30 * 60 + 120
