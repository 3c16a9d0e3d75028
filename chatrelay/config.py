from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses."
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    # Upstream completion / image API
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    chat_model: str = env_field("gpt-4o-mini", "CHAT_MODEL")
    chat_system_prompt: str = env_field(DEFAULT_SYSTEM_PROMPT, "CHAT_SYSTEM_PROMPT")
    chat_max_tokens: int = env_field(1000, "CHAT_MAX_TOKENS")
    chat_temperature: float = env_field(0.7, "CHAT_TEMPERATURE")
    image_model: str = env_field("dall-e-3", "IMAGE_MODEL")
    image_size: str = env_field("1024x1024", "IMAGE_SIZE")
    image_quality: str = env_field("hd", "IMAGE_QUALITY")
    image_style: str = env_field("natural", "IMAGE_STYLE")

    # Public application URL and extra CORS origins
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "ALLOWED_ORIGINS",
        description="Comma-separated origins allowed in addition to the app URL",
    )

    # Rate limits; a non-positive ceiling disables the limit for that capability
    chat_rate_limit_per_minute: int = env_field(60, "RATE_LIMIT_REQUESTS_PER_MINUTE")
    image_rate_limit_per_minute: int = env_field(10, "RATE_LIMIT_IMAGE_REQUESTS_PER_MINUTE")
    auth_rate_limit_per_minute: int = env_field(5, "RATE_LIMIT_AUTH_REQUESTS_PER_MINUTE")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    password_reset_cooldown_seconds: int = env_field(60, "PASSWORD_RESET_COOLDOWN_SECONDS")

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared counter store; in-process counters are used when unset",
    )

    # Sessions
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ChatRelay", "EMAIL_FROM_NAME")

    download_allowed_hosts: list[str] = env_field(
        [],
        "DOWNLOAD_ALLOWED_HOSTS",
        description="Hosts /api/download-image may fetch from; empty allows any host",
    )
    environment: str = env_field("development", "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
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

    @field_validator("cors_allow_origins", "download_allowed_hosts", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("openai_api_key", "redis_url", "openai_base_url", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
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
