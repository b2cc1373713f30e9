from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ticketgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/ticketgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets used by the test suite.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Session carrier
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Mark the session cookie Secure; disable only for plain-http local development.",
    )
    session_lifetime_days: int = env_field(30, "SESSION_LIFETIME_DAYS", ge=1)
    session_renewal_days: int = env_field(15, "SESSION_RENEWAL_DAYS", ge=0)
    token_bytes: int = env_field(20, "TOKEN_BYTES", ge=20)

    # One-time codes
    email_verification_code_length: int = env_field(
        8, "EMAIL_VERIFICATION_CODE_LENGTH", ge=6, le=32
    )
    email_verification_ttl_minutes: int = env_field(
        120, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1
    )
    email_verification_resend_seconds: int = env_field(
        60, "EMAIL_VERIFICATION_RESEND_SECONDS", ge=0
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    password_reset_issues_session: bool = env_field(
        True,
        "PASSWORD_RESET_ISSUES_SESSION",
        description="Sign the user in on the resetting device after all sessions are dropped.",
    )

    # Rate limits (requests per window)
    rate_limit_timeout_seconds: float = env_field(2.0, "RATE_LIMIT_TIMEOUT_SECONDS", gt=0)
    rate_limit_bypass_ips: list[str] = env_field([], "RATE_LIMIT_BYPASS_IPS")
    sign_in_rate_limit_per_minute: int = env_field(50, "SIGN_IN_RATE_LIMIT_PER_MINUTE")
    sign_up_rate_limit_per_minute: int = env_field(30, "SIGN_UP_RATE_LIMIT_PER_MINUTE")
    password_forgot_rate_limit_per_minute: int = env_field(
        30, "PASSWORD_FORGOT_RATE_LIMIT_PER_MINUTE"
    )
    password_reset_rate_limit_per_minute: int = env_field(
        30, "PASSWORD_RESET_RATE_LIMIT_PER_MINUTE"
    )
    password_change_rate_limit_per_minute: int = env_field(
        60, "PASSWORD_CHANGE_RATE_LIMIT_PER_MINUTE"
    )
    email_verification_rate_limit_per_minute: int = env_field(
        100, "EMAIL_VERIFICATION_RATE_LIMIT_PER_MINUTE"
    )
    email_change_rate_limit_per_minute: int = env_field(10, "EMAIL_CHANGE_RATE_LIMIT_PER_MINUTE")
    email_change_verify_rate_limit_per_minute: int = env_field(
        20, "EMAIL_CHANGE_VERIFY_RATE_LIMIT_PER_MINUTE"
    )
    api_rate_limit_per_minute: int = env_field(100, "API_RATE_LIMIT_PER_MINUTE")
    combo_rate_limit: int = env_field(5, "COMBO_RATE_LIMIT", ge=1)
    combo_rate_limit_window_seconds: int = env_field(
        300, "COMBO_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    email_rate_limit: int = env_field(10, "EMAIL_RATE_LIMIT", ge=1)
    email_rate_limit_window_seconds: int = env_field(
        3600, "EMAIL_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Ticketgate", "EMAIL_FROM_NAME")

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

    @field_validator("cors_allow_origins", "rate_limit_bypass_ips", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_session_window(self) -> "Settings":
        if self.session_renewal_days >= self.session_lifetime_days:
            raise ValueError("session_renewal_days must be shorter than session_lifetime_days")
        if not self.cookie_secure and not self.test_mode:
            logger.warning("session_cookie_insecure", name=self.session_cookie_name)
        return self


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
