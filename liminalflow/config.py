from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from liminalflow.logging import get_logger

logger = get_logger(__name__)


class DeploymentEnvironment(str, Enum):
    """Environment label recorded on every flow execution."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Engine defaults and provider credentials read from the environment."""

    environment: DeploymentEnvironment = env_field(
        DeploymentEnvironment.DEVELOPMENT, "FLOW_ENVIRONMENT"
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (echo provider, no Redis).",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    # Execution defaults, overridable per call through ExecutionOptions
    default_max_concurrent_nodes: int = env_field(4, "FLOW_MAX_CONCURRENT_NODES")
    default_retry_attempts: int = env_field(0, "FLOW_RETRY_ATTEMPTS")
    max_retries_hard_cap: int = env_field(
        5,
        "FLOW_MAX_RETRIES_HARD_CAP",
        description="Upper bound applied to any node or call level retry budget",
    )
    retry_backoff_ms: int = env_field(1000, "FLOW_RETRY_BACKOFF_MS")
    default_node_timeout_ms: int = env_field(30000, "FLOW_NODE_TIMEOUT_MS")
    default_flow_timeout_ms: int = env_field(300000, "FLOW_TIMEOUT_MS")
    validation_cache_size: int = env_field(256, "FLOW_VALIDATION_CACHE_SIZE")
    validation_cache_ttl_seconds: int = env_field(3600, "FLOW_VALIDATION_CACHE_TTL")
    history_default_limit: int = env_field(50, "FLOW_HISTORY_LIMIT")
    # Providers
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str = env_field("https://api.openai.com/v1", "OPENAI_BASE_URL")
    openai_model_prefixes: str = env_field(
        "gpt-,o1-,o3-,openai/",
        "OPENAI_MODEL_PREFIXES",
        description="Comma separated model id prefixes routed to the OpenAI provider",
    )
    ollama_base_url: str | None = env_field(None, "OLLAMA_BASE_URL")
    ollama_model_prefixes: str = env_field("ollama-,ollama/", "OLLAMA_MODEL_PREFIXES")
    enable_echo_provider: bool = env_field(
        False,
        "ENABLE_ECHO_PROVIDER",
        description="Register the local echo provider for the 'echo' model prefix",
    )
    provider_connect_timeout: float = env_field(10.0, "PROVIDER_CONNECT_TIMEOUT")

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: DeploymentEnvironment) -> DeploymentEnvironment:
        return DeploymentEnvironment(value)

    @field_validator(
        "default_max_concurrent_nodes",
        "default_node_timeout_ms",
        "default_flow_timeout_ms",
        "validation_cache_size",
        "history_default_limit",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("default_retry_attempts", "max_retries_hard_cap", "retry_backoff_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @staticmethod
    def _split_prefixes(raw: str) -> list[str]:
        return [item.strip() for item in raw.split(",") if item.strip()]

    @property
    def openai_prefixes(self) -> list[str]:
        return self._split_prefixes(self.openai_model_prefixes)

    @property
    def ollama_prefixes(self) -> list[str]:
        return self._split_prefixes(self.ollama_model_prefixes)


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
