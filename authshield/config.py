from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authshield.logging import get_logger

logger = get_logger(__name__)


class FailurePolicy(str, Enum):
    """What the login guard answers when the shared cache is unreachable.

    - CLOSED: deny the attempt (brute-force protection stays in force)
    - OPEN: admit the attempt; only for availability-critical paths with alerting
    """

    CLOSED = "closed"
    OPEN = "open"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login guard and revocation registry."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    cache_key_prefix: str = env_field(
        "authshield:",
        "CACHE_KEY_PREFIX",
        description="Prefix applied to every cache key written by this service",
    )
    cache_socket_timeout: float = env_field(5.0, "CACHE_SOCKET_TIMEOUT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and allow the in-memory cache fallback",
    )
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")

    # Login attempt guard
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")
    attempt_window_seconds: int = env_field(15 * 60, "ATTEMPT_WINDOW_SECONDS")
    backoff_base_seconds: int = env_field(1, "BACKOFF_BASE_SECONDS")
    backoff_max_seconds: int = env_field(60, "BACKOFF_MAX_SECONDS")
    lockout_failure_policy: FailurePolicy = env_field(
        FailurePolicy.CLOSED,
        "LOCKOUT_FAILURE_POLICY",
        description="closed (deny) or open (admit) when the cache is unreachable",
    )

    # Revocation registry; matches the refresh token lifetime (7 days)
    token_max_lifetime_seconds: int = env_field(
        7 * 24 * 60 * 60, "TOKEN_MAX_LIFETIME_SECONDS"
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

    @field_validator(
        "max_failed_attempts",
        "lockout_duration_seconds",
        "attempt_window_seconds",
        "backoff_base_seconds",
        "backoff_max_seconds",
        "token_max_lifetime_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("lockout_failure_policy")
    @classmethod
    def _validate_policy(cls, value: FailurePolicy) -> FailurePolicy:
        return FailurePolicy(value)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.lockout_failure_policy is FailurePolicy.OPEN:
            logger.warning(
                "lockout_failure_policy_open",
                message="Login guard admits attempts while the cache is unreachable",
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
