from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from liminalflow.config import Settings, get_settings, reset_settings_cache
from liminalflow.logging import get_logger
from liminalflow.service.flows import FlowService
from liminalflow.service.gateway import ModelGateway
from liminalflow.service.model_backend import (
    EchoProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
)
from liminalflow.service.validation import ValidationCache
from liminalflow.service.variants import VariantSelector
from liminalflow.service.workflow import FlowExecutionEngine
from liminalflow.storage.memory import MemoryStore
from liminalflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store, gateway, engine and facade instances."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryStore()

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url and not self.settings.test_mode:
            self.cache = RedisCache(self.settings.redis_url)
        else:
            logger.info(
                "redis_disabled",
                redis_url=_mask_url_password(self.settings.redis_url),
                reason="test_mode" if self.settings.test_mode else "redis_url_missing",
            )

        self.gateway = ModelGateway(
            default_timeout_seconds=self.settings.default_node_timeout_ms / 1000.0
        )
        self._register_providers()

        self.engine = FlowExecutionEngine(
            self.store,
            self.gateway,
            settings=self.settings,
            template_lookup=self.store.get_template,
            cache=self.cache,
        )
        self.variants = VariantSelector(self.store)
        self.flows = FlowService(
            self.store,
            self.store,
            self.engine,
            variants=self.variants,
            settings=self.settings,
            cache=self.cache,
            validation_cache=ValidationCache(self.settings.validation_cache_size),
        )
        logger.info(
            "runtime_initialized",
            providers=sorted(self.gateway.providers),
            redis_enabled=self.cache is not None,
        )

    def _register_providers(self) -> None:
        settings = self.settings
        if settings.openai_api_key:
            self.gateway.register(
                OpenAICompatibleProvider(
                    settings.openai_base_url,
                    api_key=settings.openai_api_key,
                    connect_timeout=settings.provider_connect_timeout,
                ),
                prefixes=settings.openai_prefixes,
            )
        if settings.ollama_base_url:
            self.gateway.register(
                OllamaProvider(
                    settings.ollama_base_url,
                    connect_timeout=settings.provider_connect_timeout,
                ),
                prefixes=settings.ollama_prefixes,
            )
        if settings.test_mode or settings.enable_echo_provider:
            self.gateway.register(EchoProvider(), prefixes=["echo"])

    async def close(self) -> None:
        for provider in self.gateway.providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
