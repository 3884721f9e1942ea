from __future__ import annotations

import os
import uuid
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authpipe.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments the client can target."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class StorageBackend(str, Enum):
    """Where credential and lockout records are kept."""

    MEMORY = "memory"
    REDIS = "redis"


# Endpoint paths on the authentication service
API_ENDPOINTS: dict[str, str] = {
    "login": "/api/auth/login",
    "register": "/api/auth/register",
    "refresh": "/api/auth/refresh",
    "logout": "/api/auth/logout",
    "validate": "/api/auth/validate",
    "forgot_password": "/api/auth/forgot-password",
    "reset_password": "/api/auth/reset-password",
    "user_profile": "/api/user/profile",
    "user_update": "/api/user/update",
    "user_sessions": "/api/user/sessions",
    "sessions": "/api/sessions",
    "sessions_join": "/api/sessions/join",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client settings for the auth request pipeline."""

    api_base_url: str = env_field(
        "https://asklynk-bkend.vercel.app", "AUTHPIPE_API_BASE_URL"
    )
    environment: Environment = env_field(
        Environment.PRODUCTION, "AUTHPIPE_ENVIRONMENT"
    )
    client_version: str = env_field("1.0.0", "AUTHPIPE_CLIENT_VERSION")
    install_id: str = env_field(
        "",
        "AUTHPIPE_INSTALL_ID",
        description="Stable per-install identifier; generated when empty",
        validate_default=True,
    )

    # Token validation
    token_refresh_buffer_ms: int = env_field(
        5 * 60 * 1000,
        "AUTHPIPE_TOKEN_REFRESH_BUFFER_MS",
        description="Treat tokens as expired this long before their exp claim",
    )

    # Client-side rate limiting
    rate_limit_window_ms: int = env_field(60 * 1000, "AUTHPIPE_RATE_LIMIT_WINDOW_MS")
    max_requests_per_window: int = env_field(20, "AUTHPIPE_MAX_REQUESTS_PER_WINDOW")
    default_retry_after_seconds: int = env_field(
        60,
        "AUTHPIPE_DEFAULT_RETRY_AFTER_SECONDS",
        description="Used when a 429 response carries no usable Retry-After header",
    )

    # Login lockout
    max_login_attempts: int = env_field(5, "AUTHPIPE_MAX_LOGIN_ATTEMPTS")
    login_lockout_ms: int = env_field(15 * 60 * 1000, "AUTHPIPE_LOGIN_LOCKOUT_MS")

    # Retries
    max_retry_attempts: int = env_field(3, "AUTHPIPE_MAX_RETRY_ATTEMPTS")
    retry_delay_base_ms: int = env_field(1000, "AUTHPIPE_RETRY_DELAY_BASE_MS")
    retry_delay_max_ms: int = env_field(10000, "AUTHPIPE_RETRY_DELAY_MAX_MS")
    request_timeout_seconds: float = env_field(30.0, "AUTHPIPE_REQUEST_TIMEOUT_SECONDS")

    # Input validation
    max_email_length: int = env_field(254, "AUTHPIPE_MAX_EMAIL_LENGTH")
    max_password_length: int = env_field(128, "AUTHPIPE_MAX_PASSWORD_LENGTH")
    max_username_length: int = env_field(50, "AUTHPIPE_MAX_USERNAME_LENGTH")
    min_password_length: int = env_field(8, "AUTHPIPE_MIN_PASSWORD_LENGTH")

    # Storage keys
    token_storage_key: str = env_field("asklynk_auth_token_v2", "AUTHPIPE_TOKEN_KEY")
    refresh_token_key: str = env_field(
        "asklynk_refresh_token_v2", "AUTHPIPE_REFRESH_TOKEN_KEY"
    )
    user_data_key: str = env_field("asklynk_user_data_v2", "AUTHPIPE_USER_DATA_KEY")
    auth_state_key: str = env_field("asklynk_auth_state_v2", "AUTHPIPE_AUTH_STATE_KEY")

    storage_backend: StorageBackend = env_field(
        StorageBackend.MEMORY, "AUTHPIPE_STORAGE_BACKEND"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field(
        "",
        "AUTHPIPE_STATE_DIR",
        description="Directory for the persisted memory store; empty keeps state in memory only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )

    model_config = ConfigDict(extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def endpoint_url(self, endpoint: str) -> str:
        """Join an endpoint path onto the API base URL."""
        clean = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self.api_base_url.rstrip('/')}{clean}"

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator(
        "rate_limit_window_ms",
        "login_lockout_ms",
        "retry_delay_base_ms",
        "retry_delay_max_ms",
        "max_login_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator(
        "max_retry_attempts", "token_refresh_buffer_ms", "max_requests_per_window"
    )
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("install_id")
    @classmethod
    def _ensure_install_id(cls, value: str) -> str:
        if value:
            return value
        generated = str(uuid.uuid4())
        logger.info("install_id_generated", install_id=generated)
        return generated


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
