from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from edugate.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Account roles, lowest to highest privilege."""

    GUEST = "guest"
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ORG_ADMIN = "org-admin"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window limit with an escalating block.

    ``block_seconds`` defaults to the window size when unset.
    """

    window_seconds: int
    max_attempts: int
    block_seconds: Optional[int] = None

    @property
    def effective_block_seconds(self) -> int:
        return self.block_seconds if self.block_seconds is not None else self.window_seconds

    @classmethod
    def parse(cls, raw: str) -> "RateLimitConfig":
        """Parse ``window_seconds:max_attempts[:block_seconds]``."""
        parts = [p.strip() for p in str(raw).split(":")]
        if len(parts) not in (2, 3):
            raise ValueError(f"invalid rate limit profile '{raw}'")
        try:
            values = [int(p) for p in parts]
        except ValueError as exc:
            raise ValueError(f"invalid rate limit profile '{raw}'") from exc
        if values[0] <= 0 or values[1] <= 0 or (len(values) == 3 and values[2] <= 0):
            raise ValueError(f"rate limit values must be positive: '{raw}'")
        return cls(
            window_seconds=values[0],
            max_attempts=values[1],
            block_seconds=values[2] if len(values) == 3 else None,
        )


RATE_LIMIT_PROFILES = ("login", "password_reset", "registration")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    access_token_secret: Optional[str] = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: Optional[str] = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("edugate", "JWT_ISSUER")
    jwt_audience: str = env_field("edugate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    remember_me_refresh_ttl_days: int = env_field(
        30, "REMEMBER_ME_REFRESH_TTL_DAYS", gt=0
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)

    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS", gt=0)
    session_activity_limit: int = env_field(100, "SESSION_ACTIVITY_LIMIT", gt=0)
    session_retention_days: int = env_field(30, "SESSION_RETENTION_DAYS", gt=0)

    totp_issuer: str = env_field("EduGate", "TOTP_ISSUER")
    totp_window: int = env_field(
        2,
        "TOTP_WINDOW",
        ge=0,
        description="Accepted TOTP steps either side of the current one",
    )
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", gt=0)
    mfa_challenge_max_attempts: int = env_field(3, "MFA_CHALLENGE_MAX_ATTEMPTS", gt=0)
    mfa_secret_key: Optional[str] = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting stored TOTP secrets",
    )

    require_email_verification: bool = env_field(True, "REQUIRE_EMAIL_VERIFICATION")
    self_serve_default_role: Role = env_field(Role.STUDENT, "SELF_SERVE_DEFAULT_ROLE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    store_retry_backoff_seconds: float = env_field(
        0.2, "STORE_RETRY_BACKOFF_SECONDS", ge=0
    )
    dispatch_timeout_seconds: float = env_field(10.0, "DISPATCH_TIMEOUT_SECONDS", gt=0)

    sweep_interval_seconds: int = env_field(300, "SWEEP_INTERVAL_SECONDS", gt=0)
    sweep_batch_size: int = env_field(500, "SWEEP_BATCH_SIZE", gt=0)

    login_rate_limit: str = env_field("900:5:1800", "LOGIN_RATE_LIMIT")
    password_reset_rate_limit: str = env_field("3600:3:7200", "PASSWORD_RESET_RATE_LIMIT")
    registration_rate_limit: str = env_field("3600:3:3600", "REGISTRATION_RATE_LIMIT")

    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("EduGate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    sms_gateway_url: Optional[str] = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: Optional[str] = env_field(None, "SMS_GATEWAY_TOKEN")

    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_redis: bool = env_field(False, "USE_REDIS")
    test_mode: bool = env_field(False, "TEST_MODE")
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

    @field_validator("self_serve_default_role")
    @classmethod
    def _validate_role(cls, value: Role) -> Role:
        return Role(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("login_rate_limit", "password_reset_rate_limit", "registration_rate_limit")
    @classmethod
    def _validate_rate_limit(cls, value: str) -> str:
        RateLimitConfig.parse(value)
        return value

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: Optional[str], info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError(f"{info.field_name} must be at least 32 characters")
            return value
        # Ephemeral secrets invalidate outstanding tokens on restart
        logger.warning("token_secret_generated", setting=info.field_name)
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        if self.remember_me_refresh_ttl_days < self.refresh_token_ttl_days:
            raise ValueError("remember-me refresh lifetime must not be shorter than the standard one")
        return self

    def rate_limit_profile(self, name: str) -> RateLimitConfig:
        """Return the named rate-limit profile."""
        if name not in RATE_LIMIT_PROFILES:
            raise KeyError(name)
        return RateLimitConfig.parse(getattr(self, f"{name}_rate_limit"))


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
