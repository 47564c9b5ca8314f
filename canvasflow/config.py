from __future__ import annotations

import os
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from canvasflow.logging import get_logger

logger = get_logger(__name__)


class Provider(str, Enum):
    """AI backends the worker can dispatch to."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    XAI = "xai"
    DEEPSEEK = "deepseek"


# Names producers put on nodes, mapped to the backend that serves them
PROVIDER_ALIASES: dict[str, Provider] = {
    "openai": Provider.OPENAI,
    "gpt": Provider.OPENAI,
    "anthropic": Provider.ANTHROPIC,
    "claude": Provider.ANTHROPIC,
    "google": Provider.GOOGLE,
    "gemini": Provider.GOOGLE,
    "xai": Provider.XAI,
    "grok": Provider.XAI,
    "deepseek": Provider.DEEPSEEK,
}


def resolve_provider(value: Any) -> Optional[Provider]:
    """Map a provider name or alias to a Provider, or None when unknown."""
    if isinstance(value, Provider):
        return value
    if not isinstance(value, str):
        return None
    return PROVIDER_ALIASES.get(value.strip().lower())


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the node-execution worker."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    queue_sources: List[str] = env_field(
        ["canvas:tasks:pro", "canvas:tasks:free"],
        "QUEUE_SOURCES",
        description="Task sources, highest priority first (comma-separated in env)",
    )
    queue_poll_wait_seconds: float = env_field(5.0, "QUEUE_POLL_WAIT_SECONDS")
    queue_idle_sleep_seconds: float = env_field(1.0, "QUEUE_IDLE_SLEEP_SECONDS")
    queue_error_sleep_seconds: float = env_field(5.0, "QUEUE_ERROR_SLEEP_SECONDS")

    # Reactive datastore that owns execution records and canvas documents
    datastore_url: str = env_field("http://localhost:3210", "DATASTORE_URL")
    datastore_token: str | None = env_field(None, "DATASTORE_TOKEN")
    datastore_timeout_seconds: float = env_field(15.0, "DATASTORE_TIMEOUT_SECONDS")
    datastore_execution_path: str = env_field(
        "canvasExecutions:updateNodeExecution", "DATASTORE_EXECUTION_PATH"
    )
    datastore_patch_path: str = env_field(
        "canvas:updateNodeDataInternal", "DATASTORE_PATCH_PATH"
    )
    datastore_graph_path: str = env_field("canvas:getCanvasInternal", "DATASTORE_GRAPH_PATH")

    media_root: str = env_field("/srv/canvasflow/media", "MEDIA_ROOT")
    media_fetch_timeout_seconds: float = env_field(60.0, "MEDIA_FETCH_TIMEOUT_SECONDS")
    media_max_bytes: int = env_field(100 * 1024 * 1024, "MEDIA_MAX_BYTES")

    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    google_api_key: str | None = env_field(None, "GOOGLE_API_KEY")
    xai_api_key: str | None = env_field(None, "XAI_API_KEY")
    deepseek_api_key: str | None = env_field(None, "DEEPSEEK_API_KEY")

    default_text_model: str = env_field("gpt-4o", "DEFAULT_TEXT_MODEL")
    default_image_model: str = env_field("dall-e-3", "DEFAULT_IMAGE_MODEL")
    default_video_model: str = env_field("sora-2", "DEFAULT_VIDEO_MODEL")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")

    stream_flush_tokens: int = env_field(
        10,
        "STREAM_FLUSH_TOKENS",
        description="Flush partial text after this many new tokens",
    )
    stream_flush_interval_ms: int = env_field(
        500,
        "STREAM_FLUSH_INTERVAL_MS",
        description="Flush partial text at least this often while streaming",
    )
    generation_timeout_seconds: float = env_field(30.0, "GENERATION_TIMEOUT_SECONDS")
    media_generation_timeout_seconds: float = env_field(
        600.0, "MEDIA_GENERATION_TIMEOUT_SECONDS"
    )
    persistence_max_attempts: int = env_field(3, "PERSISTENCE_MAX_ATTEMPTS")
    persistence_backoff_ms: int = env_field(500, "PERSISTENCE_BACKOFF_MS")
    context_token_budget: int = env_field(4000, "CONTEXT_TOKEN_BUDGET")

    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for tests; implies in-memory backends",
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

    @field_validator("queue_sources", mode="before")
    @classmethod
    def _split_sources(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if isinstance(value, (list, tuple)):
            value = [str(part).strip() for part in value if str(part).strip()]
            if not value:
                raise ValueError("QUEUE_SOURCES must name at least one source")
        return value

    @field_validator(
        "stream_flush_tokens",
        "stream_flush_interval_ms",
        "persistence_max_attempts",
        "context_token_budget",
        "media_max_bytes",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("generation_timeout_seconds", "media_generation_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("persistence_backoff_ms")
    @classmethod
    def _non_negative_backoff(cls, value: int) -> int:
        if value < 0:
            raise ValueError("backoff must not be negative")
        return value

    @property
    def in_memory(self) -> bool:
        return self.use_memory_store or self.test_mode

    def default_api_key(self, provider: Provider) -> Optional[str]:
        """Fallback key for tasks that carry none."""
        keys = {
            Provider.OPENAI: self.openai_api_key,
            Provider.ANTHROPIC: self.anthropic_api_key,
            Provider.GOOGLE: self.google_api_key,
            Provider.XAI: self.xai_api_key,
            Provider.DEEPSEEK: self.deepseek_api_key,
        }
        return keys.get(provider) or None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            queue_sources=_settings_cache.queue_sources,
            in_memory=_settings_cache.in_memory,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
