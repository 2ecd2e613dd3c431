from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Separate key for refresh tokens; falls back to JWT_SECRET",
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Sessions
    max_active_sessions: int = env_field(5, "MAX_ACTIVE_SESSIONS")
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    password_reset_rate_limit_per_day: int = env_field(
        3, "PASSWORD_RESET_RATE_LIMIT_PER_DAY"
    )
    verification_rate_limit_per_hour: int = env_field(
        3, "VERIFICATION_RATE_LIMIT_PER_HOUR"
    )

    # One-time tokens
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Lockout and password policy
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_step_minutes: int = env_field(5, "LOCKOUT_STEP_MINUTES")
    lockout_max_minutes: int = env_field(60, "LOCKOUT_MAX_MINUTES")
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS")
    login_password_min_length: int = env_field(8, "LOGIN_PASSWORD_MIN_LENGTH")
    strong_password_min_length: int = env_field(12, "STRONG_PASSWORD_MIN_LENGTH")

    # Two-factor
    totp_window_steps: int = env_field(2, "TOTP_WINDOW_STEPS")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_issuer: str = env_field("Warden", "TOTP_ISSUER")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")

    # Risk heuristics (tunable, not calibrated against abuse data)
    risk_lookback_hours: int = env_field(24, "RISK_LOOKBACK_HOURS")
    risk_sample_size: int = env_field(10, "RISK_SAMPLE_SIZE")
    risk_distinct_ip_threshold: int = env_field(5, "RISK_DISTINCT_IP_THRESHOLD")
    risk_distinct_agent_threshold: int = env_field(3, "RISK_DISTINCT_AGENT_THRESHOLD")
    risk_event_threshold: int = env_field(10, "RISK_EVENT_THRESHOLD")

    # Collaborators
    redis_url: str | None = env_field(None, "REDIS_URL")
    alert_webhook_url: str | None = env_field(None, "ALERT_WEBHOOK_URL")
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for 2FA secrets at rest; falls back to JWT_SECRET",
    )

    # Email delivery (dev mode logs instead of sending when smtp_host is unset)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with an ephemeral key die with the process
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "max_active_sessions",
        "lockout_threshold",
        "backup_code_count",
        "totp_interval_seconds",
        "risk_sample_size",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def refresh_signing_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret

    @property
    def encryption_key_material(self) -> str:
        return self.secret_encryption_key or self.jwt_secret


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
