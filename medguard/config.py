from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medguard.logging import get_logger

logger = get_logger(__name__)


# Idle timeouts by platform role, in seconds
ROLE_IDLE_TIMEOUTS: dict[str, int] = {
    "paciente": 30 * 60,
    "medico": 60 * 60,
    "farmacia": 60 * 60,
    "laboratorio": 60 * 60,
    "clinica": 60 * 60,
    "ambulancia": 30 * 60,
    "seguro": 60 * 60,
}

DEFAULT_LOCKOUT_THRESHOLDS = "3:20,5:60,7:180,10:600"


def parse_lockout_thresholds(raw: str | list | tuple) -> list[tuple[int, int]]:
    """Parse ``"3:20,5:60"`` into ``[(3, 20), (5, 60)]`` sorted by attempts."""
    if isinstance(raw, (list, tuple)):
        pairs = [(int(a), int(s)) for a, s in raw]
    else:
        pairs = []
        for chunk in str(raw).split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            attempts, _, seconds = chunk.partition(":")
            if not seconds:
                raise ValueError(f"invalid lockout threshold '{chunk}'")
            pairs.append((int(attempts), int(seconds)))
    if not pairs:
        raise ValueError("at least one lockout threshold is required")
    for attempts, seconds in pairs:
        if attempts <= 0 or seconds <= 0:
            raise ValueError("lockout thresholds must be positive")
    return sorted(pairs)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/medguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/medguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )
    # Two-factor settings
    totp_issuer: str = env_field("RedSalud", "TOTP_ISSUER")
    totp_drift_steps: int = env_field(
        2,
        "TOTP_DRIFT_STEPS",
        description="Accepted 30-second steps on either side of the current one",
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    # Phone verification
    phone_code_ttl_seconds: int = env_field(10 * 60, "PHONE_CODE_TTL_SECONDS")
    phone_max_attempts: int = env_field(3, "PHONE_MAX_ATTEMPTS")
    sms_provider_url: str | None = env_field(None, "SMS_PROVIDER_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("RedSalud", "SMS_SENDER_ID")
    # Lockout
    lockout_thresholds: list[tuple[int, int]] = env_field(
        parse_lockout_thresholds(DEFAULT_LOCKOUT_THRESHOLDS),
        "LOCKOUT_THRESHOLDS",
        description="Comma separated attempts:seconds pairs, most severe match wins",
    )
    # Session lifecycle
    session_idle_timeout_seconds: int = env_field(30 * 60, "SESSION_IDLE_TIMEOUT_SECONDS")
    session_warning_lead_seconds: int = env_field(5 * 60, "SESSION_WARNING_LEAD_SECONDS")
    session_poll_interval_seconds: int = env_field(30, "SESSION_POLL_INTERVAL_SECONDS")
    # API boundary
    collapse_otp_errors: bool = env_field(
        False,
        "COLLAPSE_OTP_ERRORS",
        description="Report OTP mismatch, expiry and exhaustion with one generic message",
    )
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    send_code_rate_limit_per_minute: int = env_field(3, "SEND_CODE_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("lockout_thresholds", mode="before")
    @classmethod
    def _parse_thresholds(cls, value: Any) -> list[tuple[int, int]]:
        return parse_lockout_thresholds(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [o.strip() for o in value.split(",") if o.strip()]
        return value

    @field_validator("totp_drift_steps", "phone_max_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_session_policy(self):
        if self.session_warning_lead_seconds >= self.session_idle_timeout_seconds:
            raise ValueError(
                "SESSION_WARNING_LEAD_SECONDS must be smaller than SESSION_IDLE_TIMEOUT_SECONDS"
            )
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
