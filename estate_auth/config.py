from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from estate_auth.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Closed set of account roles."""

    BUYER = "buyer"
    PRIVATE_SELLER = "private_seller"
    AGENT = "agent"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


# Roles a user may pick for themselves at signup or via switch-role
SELF_SERVICE_ROLES = frozenset({Role.BUYER, Role.PRIVATE_SELLER, Role.AGENT})
TRIAL_ROLE = Role.AGENT
DOWNGRADE_ROLE = Role.PRIVATE_SELLER


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: str) -> timedelta:
    """Parse a duration string such as ``"15m"`` or ``"7d"``."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    delta = timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    if delta <= timedelta(0):
        raise ValueError(f"duration must be positive: {value!r}")
    return delta


@dataclass(frozen=True)
class RateLimitPolicy:
    """Fixed-window threshold with a block applied once it is exceeded."""

    name: str
    max_attempts: int
    window: timedelta
    block: timedelta

    @classmethod
    def parse(cls, name: str, value: str) -> "RateLimitPolicy":
        """Parse ``"<max>/<window>:<block>"``, e.g. ``"5/15m:30m"``."""
        try:
            attempts, rest = value.split("/", 1)
            window, block = rest.split(":", 1)
            max_attempts = int(attempts)
        except ValueError as exc:
            raise ValueError(f"invalid rate limit policy: {value!r}") from exc
        if max_attempts < 1:
            raise ValueError(f"rate limit must allow at least one attempt: {value!r}")
        return cls(name, max_attempts, parse_duration(window), parse_duration(block))


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/estate_auth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes backend requirements for tests; never enable in production",
    )
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Fall back to in-process rate limiting when Redis is unreachable",
    )
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("estate-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("estate-clients", "JWT_AUDIENCE")
    access_token_ttl: timedelta = env_field(timedelta(minutes=15), "ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = env_field(timedelta(days=7), "REFRESH_TOKEN_TTL")
    max_sessions_per_account: int = env_field(5, "MAX_SESSIONS_PER_ACCOUNT", ge=1)

    # Lockout and credentials
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=1)
    lockout_duration: timedelta = env_field(timedelta(minutes=30), "LOCKOUT_DURATION")
    login_history_limit: int = env_field(100, "LOGIN_HISTORY_LIMIT", ge=1)
    password_reset_ttl: timedelta = env_field(timedelta(hours=1), "PASSWORD_RESET_TTL")

    # Trial entitlement
    trial_duration: timedelta = env_field(timedelta(days=7), "TRIAL_DURATION")
    trial_reminder_lead: timedelta = env_field(timedelta(days=3), "TRIAL_REMINDER_LEAD")
    trial_listings_limit: int = env_field(10, "TRIAL_LISTINGS_LIMIT", ge=0)
    free_listings_limit: int = env_field(3, "FREE_LISTINGS_LIMIT", ge=0)

    # Rate limits as "<max>/<window>:<block>"
    rate_limit_login_ip: RateLimitPolicy = env_field(
        RateLimitPolicy("login_ip", 5, timedelta(minutes=15), timedelta(minutes=30)),
        "RATE_LIMIT_LOGIN_IP",
    )
    rate_limit_login_account: RateLimitPolicy = env_field(
        RateLimitPolicy("login_account", 3, timedelta(minutes=15), timedelta(minutes=60)),
        "RATE_LIMIT_LOGIN_ACCOUNT",
    )
    rate_limit_signup_ip: RateLimitPolicy = env_field(
        RateLimitPolicy("signup_ip", 3, timedelta(hours=1), timedelta(hours=2)),
        "RATE_LIMIT_SIGNUP_IP",
    )
    rate_limit_reset_ip: RateLimitPolicy = env_field(
        RateLimitPolicy("reset_ip", 3, timedelta(hours=1), timedelta(hours=2)),
        "RATE_LIMIT_RESET_IP",
    )
    rate_limit_reset_account: RateLimitPolicy = env_field(
        RateLimitPolicy("reset_account", 2, timedelta(hours=1), timedelta(hours=3)),
        "RATE_LIMIT_RESET_ACCOUNT",
    )
    trust_forwarded_for: bool = env_field(
        True,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client address",
    )

    # Background lifecycle scheduler
    scheduler_enabled: bool = env_field(True, "SCHEDULER_ENABLED")
    scheduler_poll_interval: int = env_field(
        60, "SCHEDULER_POLL_INTERVAL", description="Scheduler wake-up interval in seconds"
    )
    trial_sweep_interval: timedelta = env_field(timedelta(days=1), "TRIAL_SWEEP_INTERVAL")
    session_sweep_interval: timedelta = env_field(timedelta(hours=12), "SESSION_SWEEP_INTERVAL")
    rate_limit_sweep_interval: timedelta = env_field(
        timedelta(minutes=5), "RATE_LIMIT_SWEEP_INTERVAL"
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Estate Marketplace", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "lockout_duration",
        "password_reset_ttl",
        "trial_duration",
        "trial_reminder_lead",
        "trial_sweep_interval",
        "session_sweep_interval",
        "rate_limit_sweep_interval",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator(
        "rate_limit_login_ip",
        "rate_limit_login_account",
        "rate_limit_signup_ip",
        "rate_limit_reset_ip",
        "rate_limit_reset_account",
        mode="before",
    )
    @classmethod
    def _parse_rate_limit(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, str):
            return RateLimitPolicy.parse(info.field_name.removeprefix("rate_limit_"), value)
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @property
    def access_secret(self) -> str:
        return self.access_token_secret or self.jwt_secret

    @property
    def refresh_secret(self) -> str:
        return self.refresh_token_secret or self.jwt_secret

    def rate_limit_policies(self) -> list[RateLimitPolicy]:
        return [
            self.rate_limit_login_ip,
            self.rate_limit_login_account,
            self.rate_limit_signup_ip,
            self.rate_limit_reset_ip,
            self.rate_limit_reset_account,
        ]


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
