from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger
from warden.service.errors import InvalidConfiguration
from warden.service.tokens import parse_duration

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and ``.env``."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    redis_key_prefix: str = env_field(
        "", "REDIS_KEY_PREFIX", description="Namespace prepended to every session cache key"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows in-memory fallbacks and runtime resets for the test suite.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_expires_in: str = env_field(
        "7d", "JWT_EXPIRES_IN", description="Access token lifetime, e.g. 15m, 24h, 7d"
    )
    jwt_refresh_expires_in: str = env_field(
        "30d", "JWT_REFRESH_EXPIRES_IN", description="Refresh token lifetime"
    )
    refresh_blacklist_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "REFRESH_BLACKLIST_TTL_SECONDS",
        description="Fixed blacklist lifetime for refresh tokens revoked at logout",
    )
    api_prefix: str = env_field("/api", "API_PREFIX")
    default_role_code: str | None = env_field(
        "user", "DEFAULT_ROLE_CODE", description="Role attached to newly registered users"
    )
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma separated list of origins"
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

    @field_validator("jwt_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        # InvalidDurationFormat is not a ValueError, so it escapes pydantic unchanged
        parse_duration(value)
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            return ""
        return "/" + value.strip("/")

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="No secret configured; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise InvalidConfiguration(
                "JWT_SECRET and JWT_REFRESH_SECRET must differ"
            )
        return self

    @property
    def access_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_expires_in)

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_refresh_expires_in)

    def cors_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
