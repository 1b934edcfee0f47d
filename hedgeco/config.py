from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hedgeco.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session core, read from the environment."""

    app_version: str = env_field("0.1.0", "APP_VERSION")
    database_url: str = env_field(
        "postgresql://localhost:5432/hedgeco", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")

    # Cache. An empty REDIS_URL is a supported configuration: caching is off.
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Per-command and connect timeout in seconds",
    )
    redis_max_retries: int = env_field(
        3,
        "REDIS_MAX_RETRIES",
        description="Consecutive failed attempts before the cache is marked degraded",
    )
    redis_backoff_base_ms: int = env_field(100, "REDIS_BACKOFF_BASE_MS")
    redis_backoff_cap_ms: int = env_field(3000, "REDIS_BACKOFF_CAP_MS")
    redis_probe_interval_seconds: float = env_field(
        5.0,
        "REDIS_PROBE_INTERVAL_SECONDS",
        description="Minimum spacing between recovery probes while degraded",
    )
    redis_required: bool = env_field(
        False,
        "REDIS_REQUIRED",
        description="Readiness fails when Redis is down (health never does)",
    )

    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("hedgeco", "JWT_ISSUER")
    jwt_audience: str = env_field("hedgeco-web", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    reuse_revokes_all_sessions: bool = env_field(
        False,
        "REUSE_REVOKES_ALL_SESSIONS",
        description="On refresh-token reuse revoke every session of the user, not just the family",
    )

    # HTTP
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name)
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", field=info.field_name)
        return secrets.token_urlsafe(64)

    @field_validator(
        "access_token_ttl_minutes", "refresh_token_ttl_minutes", "redis_max_retries"
    )
    @classmethod
    def _positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value


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
