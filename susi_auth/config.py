from __future__ import annotations

import os
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from susi_auth.logging import get_logger

logger = get_logger(__name__)

# Shortest JWT secret accepted from the environment; HS256 keys below this are brute-forceable.
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/susi_auth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/susi-auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no on-disk memory state, sync Redis client).",
    )

    # Signing key. When unset a key is generated once per process (see service.tokens.SigningKey).
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("susi-auth-service", "JWT_ISSUER")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # TOTP
    require_totp: bool = env_field(
        False,
        "REQUIRE_TOTP",
        description="Require a valid one-time code on every login",
    )
    totp_issuer: str = env_field("SusiApp", "TOTP_ISSUER")
    totp_encryption_key: Optional[str] = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )

    # Credential hashing work factor
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Bound on every call into the persistent store
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)

    # Rate limits (requests per minute, per subject)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

    # Pagination
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    events_channel: str = env_field("susi.auth.events", "EVENTS_CHANNEL")
    events_publish_timeout_seconds: float = env_field(
        2.0, "EVENTS_PUBLISH_TIMEOUT_SECONDS", gt=0
    )
    token_purge_interval_seconds: int = env_field(
        3600,
        "TOKEN_PURGE_INTERVAL_SECONDS",
        description="How often expired refresh and reset tokens are purged",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "totp_encryption_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _check_page_sizes(self) -> "Settings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")
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
