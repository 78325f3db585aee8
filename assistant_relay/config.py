from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from assistant_relay.logging import get_logger

logger = get_logger(__name__)


class AuthMode(str, Enum):
    """How bearer credentials are validated against the identity provider.

    - JWT: verify the provider-issued HS256 access token locally
    - REMOTE: ask the provider's user endpoint to resolve the token
    """

    JWT = "jwt"
    REMOTE = "remote"


class AttachmentMode(str, Enum):
    """Where staged documents are made available to a run."""

    MESSAGE = "message"
    VECTOR_STORE = "vector_store"


# Upstream tool used for each allowed MIME type. Images are sent as
# ``image_file`` content parts instead of tool attachments.
ALLOWED_MIME_TYPES: dict[str, str] = {
    "application/pdf": "file_search",
    "text/plain": "file_search",
    "text/csv": "code_interpreter",
    "application/json": "file_search",
    "image/png": "image",
    "image/jpeg": "image",
    "image/jpg": "image",
    "image/webp": "image",
    "image/gif": "image",
    "text/javascript": "file_search",
    "application/javascript": "file_search",
    "text/x-python": "file_search",
    "text/x-java": "file_search",
    "text/html": "file_search",
    "text/css": "file_search",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the relay service and its REST surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/assistant_relay", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/assistant-relay", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable in-process fallbacks and the runtime reset hook used by tests.",
    )
    # Upstream conversational-AI service
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str = env_field("https://api.openai.com/v1", "OPENAI_BASE_URL")
    openai_beta_header: str = env_field("assistants=v2", "OPENAI_BETA_HEADER")
    upstream_timeout_seconds: float = env_field(60.0, "UPSTREAM_TIMEOUT_SECONDS")
    # Identity provider
    auth_mode: AuthMode = env_field(AuthMode.JWT, "AUTH_MODE")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str | None = env_field(None, "JWT_ISSUER")
    jwt_audience: str = env_field("authenticated", "JWT_AUDIENCE")
    identity_provider_url: str | None = env_field(None, "IDENTITY_PROVIDER_URL")
    identity_provider_api_key: str | None = env_field(None, "IDENTITY_PROVIDER_API_KEY")
    # Rate limits
    relay_rate_limit: int = env_field(
        20, "RELAY_RATE_LIMIT", description="Admitted relay requests per user per window"
    )
    relay_rate_window_seconds: int = env_field(60, "RELAY_RATE_WINDOW_SECONDS")
    read_rate_limit_per_minute: int = env_field(120, "READ_RATE_LIMIT_PER_MINUTE")
    write_rate_limit_per_minute: int = env_field(60, "WRITE_RATE_LIMIT_PER_MINUTE")
    # Messages and attachments
    max_message_chars: int = env_field(4000, "MAX_MESSAGE_CHARS")
    max_files_per_message: int = env_field(5, "MAX_FILES_PER_MESSAGE")
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES")
    attachment_mode: AttachmentMode = env_field(AttachmentMode.MESSAGE, "ATTACHMENT_MODE")
    default_assistants: list[dict[str, str]] = env_field(
        [],
        "DEFAULT_ASSISTANTS",
        description='JSON list of {"assistant_id": ..., "name": ...} seeded for new users',
    )
    # Direct chat-completions relay
    chat_models: list[str] = env_field(
        ["gpt-5-nano-2025-08-07", "gpt-5-mini-2025-08-07", "gpt-5-2025-08-07"],
        "CHAT_MODELS",
        description="Comma-separated models a chat request may name",
    )
    chat_default_model: str = env_field("gpt-5-mini-2025-08-07", "CHAT_DEFAULT_MODEL")
    chat_rate_limit: int = env_field(20, "CHAT_RATE_LIMIT")
    chat_rate_window_seconds: int = env_field(60, "CHAT_RATE_WINDOW_SECONDS")
    chat_max_history_messages: int = env_field(50, "CHAT_MAX_HISTORY_MESSAGES")
    chat_max_completion_tokens: int = env_field(4096, "CHAT_MAX_COMPLETION_TOKENS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("auth_mode")
    @classmethod
    def _validate_auth_mode(cls, value: AuthMode) -> AuthMode:
        return AuthMode(value)

    @field_validator("attachment_mode")
    @classmethod
    def _validate_attachment_mode(cls, value: AttachmentMode) -> AttachmentMode:
        return AttachmentMode(value)

    @field_validator("redis_url", "openai_api_key", "jwt_secret", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("default_assistants", mode="before")
    @classmethod
    def _parse_assistants(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return []
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("DEFAULT_ASSISTANTS must be a JSON list") from exc
        return value

    @field_validator("cors_allow_origins", "chat_models", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
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
