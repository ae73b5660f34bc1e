from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sysauth.logging import get_logger

logger = get_logger(__name__)

# Seconds locked out after the Nth consecutive failure; the last value repeats.
DEFAULT_LOCKOUT_DELAYS = [0, 0, 0, 0, 60, 120, 300, 600, 900, 1800, 3600]

# Session markers outlive the last accepted second of an access token by this much.
SESSION_MARKER_MARGIN_SECONDS = 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, in-memory fallbacks).",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sysauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sysauth-admin", "JWT_AUDIENCE")
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    jwt_clock_skew_seconds: int = env_field(
        120,
        "JWT_CLOCK_SKEW_SECONDS",
        description="Grace period past `exp` during which a token still decodes",
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_TTL_DAYS",
        description="Refresh token lifetime when the user ticks 'remember me'",
    )

    lockout_progressive_delays: list[int] = env_field(
        DEFAULT_LOCKOUT_DELAYS, "LOCKOUT_PROGRESSIVE_DELAYS"
    )
    lockout_notify_after_seconds: int = env_field(900, "LOCKOUT_NOTIFY_AFTER_SECONDS")
    lockout_window_minutes: int = env_field(60, "LOCKOUT_WINDOW_MINUTES")

    mfa_token_ttl_minutes: int = env_field(5, "MFA_TOKEN_TTL_MINUTES")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    mfa_issuer_name: str = env_field("SysAuth", "MFA_ISSUER_NAME")

    device_approval_expiry_minutes: int = env_field(30, "DEVICE_APPROVAL_EXPIRY_MINUTES")
    device_approval_max_attempts: int = env_field(3, "DEVICE_APPROVAL_MAX_ATTEMPTS")
    device_approval_resend_cooldown_seconds: int = env_field(
        60, "DEVICE_APPROVAL_RESEND_COOLDOWN_SECONDS"
    )
    force_reauth_ttl_minutes: int = env_field(
        20,
        "FORCE_REAUTH_TTL_MINUTES",
        description="Must outlive any access token issued before the flag was set, leeway included",
    )
    permission_cache_ttl_minutes: int = env_field(60, "PERMISSION_CACHE_TTL_MINUTES")
    magic_link_ttl_minutes: int = env_field(15, "MAGIC_LINK_TTL_MINUTES")
    passkey_challenge_ttl_seconds: int = env_field(300, "PASSKEY_CHALLENGE_TTL_SECONDS")
    impossible_travel_kmh: float = env_field(800.0, "IMPOSSIBLE_TRAVEL_KMH")

    captcha_enabled: bool = env_field(False, "CAPTCHA_ENABLED")
    captcha_secret: str | None = env_field(None, "CAPTCHA_SECRET")
    captcha_verify_url: str = env_field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify", "CAPTCHA_VERIFY_URL"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SysAuth", "EMAIL_FROM_NAME")

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

    @field_validator("lockout_progressive_delays", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("lockout_progressive_delays")
    @classmethod
    def _validate_delays(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("lockout_progressive_delays must not be empty")
        if any(delay < 0 for delay in value):
            raise ValueError("lockout delays must be non-negative")
        if any(later < earlier for earlier, later in zip(value, value[1:])):
            raise ValueError("lockout delays must be non-decreasing")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET unset; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _check_marker_lifetimes(self) -> "Settings":
        if self.jwt_clock_skew_seconds < 0:
            raise ValueError("jwt_clock_skew_seconds must be non-negative")
        required = self.access_token_max_age_seconds + SESSION_MARKER_MARGIN_SECONDS
        if self.force_reauth_ttl_minutes * 60 < required:
            raise ValueError(
                "force_reauth_ttl_minutes must cover the access token lifetime "
                f"plus clock skew ({required} seconds)"
            )
        return self

    @property
    def access_token_max_age_seconds(self) -> int:
        """Seconds after issue during which an access token is still accepted."""
        return self.access_token_ttl_minutes * 60 + self.jwt_clock_skew_seconds


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
