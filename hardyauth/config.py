from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hardyauth.logging import get_logger
from hardyauth.service.errors import ConfigurationError

logger = get_logger(__name__)

# Carrier keys accepted by earlier releases, most specific first
DEFAULT_SESSION_CARRIER_KEYS = [
    "hardy_auth.session_token",
    "hardy_auth.session",
    "hardy_auth_session",
    "better-auth.session",
    "session",
    "auth-session",
]

DEFAULT_FORBIDDEN_TERMS = [
    "password",
    "qwerty",
    "123456",
    "admin",
    "doctor",
    "nurse",
    "medical",
    "health",
    "patient",
    "hospital",
    "clinic",
]

DEFAULT_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hardy_auth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; relaxes the auth secret requirement.",
    )
    auth_secret: str | None = env_field(
        None,
        "AUTH_SECRET",
        description="Server-side key for backup code digests and rate-limit key hashing",
    )

    # Sessions
    session_ttl_seconds: int = env_field(1800, "SESSION_MAX_AGE")
    session_carrier_keys: list[str] = env_field(
        list(DEFAULT_SESSION_CARRIER_KEYS), "SESSION_CARRIER_KEYS"
    )
    session_token_separator: str = env_field(".", "SESSION_TOKEN_SEPARATOR")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Password policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_history_depth: int = env_field(5, "PASSWORD_HISTORY_DEPTH")
    password_forbidden_terms: list[str] = env_field(
        list(DEFAULT_FORBIDDEN_TERMS), "PASSWORD_FORBIDDEN_TERMS"
    )
    password_special_characters: str = env_field(
        DEFAULT_SPECIAL_CHARACTERS, "PASSWORD_SPECIAL_CHARACTERS"
    )
    password_reset_ttl_seconds: int = env_field(900, "PASSWORD_RESET_TTL_SECONDS")
    password_reset_max_attempts: int = env_field(5, "PASSWORD_RESET_MAX_ATTEMPTS")
    password_reset_window_seconds: int = env_field(900, "PASSWORD_RESET_WINDOW_SECONDS")
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # TOTP
    totp_step_seconds: int = env_field(30, "TOTP_STEP_SECONDS")
    totp_window: int = env_field(1, "TOTP_WINDOW")
    totp_issuer: str = env_field("Hardy Auth", "TOTP_ISSUER")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")
    totp_encryption_key: str | None = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for TOTP secrets at rest; defaults to AUTH_SECRET",
    )

    # Rate limiting
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_ms: int = env_field(60000, "RATE_LIMIT_WINDOW_MS")

    # Global administrators
    admin_emails: list[str] = env_field([], "ADMIN_EMAILS")
    admin_domains: list[str] = env_field([], "ADMIN_DOMAINS")
    admin_patterns: list[str] = env_field([], "ADMIN_PATTERNS")

    # Audit
    audit_failure_escalation_threshold: int = env_field(
        3, "AUDIT_FAILURE_ESCALATION_THRESHOLD"
    )
    audit_failure_window_seconds: int = env_field(900, "AUDIT_FAILURE_WINDOW_SECONDS")

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
        "session_carrier_keys",
        "password_forbidden_terms",
        "admin_emails",
        "admin_domains",
        "admin_patterns",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("session_token_separator")
    @classmethod
    def _validate_separator(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("session token separator must be a single character")
        return value

    @field_validator(
        "session_ttl_seconds",
        "password_history_depth",
        "totp_step_seconds",
        "rate_limit_window_ms",
        "password_reset_ttl_seconds",
        "password_reset_max_attempts",
        "password_reset_window_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_lengths(self) -> "Settings":
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length exceeds password_max_length")
        if not self.session_carrier_keys:
            raise ValueError("at least one session carrier key is required")
        if not self.password_special_characters:
            raise ValueError("password_special_characters must not be empty")
        return self

    def require_auth_secret(self) -> str:
        """Return the auth secret or fail startup.

        Test mode substitutes a fixed development key so suites run without
        extra environment.
        """
        if self.auth_secret:
            if len(self.auth_secret) < 32:
                raise ConfigurationError("AUTH_SECRET must be at least 32 characters")
            return self.auth_secret
        if self.test_mode:
            logger.warning("auth_secret_missing_test_mode")
            return "hardyauth-test-mode-secret-not-for-production"
        raise ConfigurationError("AUTH_SECRET is required")


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
