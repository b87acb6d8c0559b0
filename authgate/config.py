from __future__ import annotations

import os
import re
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth gateway."""

    environment: str = env_field("development", "ENVIRONMENT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Deadline in seconds for every session store round trip",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows runtime resets",
    )

    # Per-IP token bucket
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_rps: float = env_field(
        500.0, "RATE_LIMIT_RPS", description="Bucket refill rate, requests per second"
    )
    rate_limit_burst: int = env_field(
        20, "RATE_LIMIT_BURST", description="Bucket capacity"
    )
    rate_limit_idle_seconds: int = env_field(
        60 * 60,
        "RATE_LIMIT_IDLE_SECONDS",
        description="Sweep interval and idle cutoff for per-IP buckets",
    )

    # Token lifetimes
    activation_token_ttl_minutes: int = env_field(
        24 * 60, "ACTIVATION_TOKEN_TTL_MINUTES"
    )
    access_token_ttl_minutes: int = env_field(10, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        4 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # Cookies
    refresh_cookie_name: str = env_field("cms_refresh_token", "REFRESH_COOKIE_NAME")
    auth_cookie_name: str = env_field("cms_auth_token", "AUTH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    cors_allow_origins: List[str] = env_field([], "CORS_TRUSTED_ORIGINS")
    activation_url: str = env_field("", "ACTIVATION_URL")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item for item in re.split(r"[,\s]+", value) if item]
        return value

    @field_validator(
        "activation_token_ttl_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "rate_limit_idle_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _validate_limiter(self) -> "Settings":
        if self.rate_limit_enabled:
            if self.rate_limit_rps <= 0:
                raise ValueError("RATE_LIMIT_RPS must be > 0 when rate limiting is enabled")
            if self.rate_limit_burst < 1:
                raise ValueError("RATE_LIMIT_BURST must be >= 1 when rate limiting is enabled")
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
