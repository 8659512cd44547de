"""Provider registry: one adapter per configured backend."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import assert_never

import httpx

from chat_orchestrator.config import ProviderConfig, Settings
from chat_orchestrator.errors import (
    CapabilityNotSupported,
    ProviderRequestError,
    ProviderTimeout,
    ProviderUnavailable,
)
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.providers.claude import ClaudeAdapter
from chat_orchestrator.providers.local_llama import LocalLlamaAdapter
from chat_orchestrator.providers.openai_compat import DeepSeekAdapter, OpenAIAdapter
from chat_orchestrator.types import HealthSnapshot, ProviderDescriptor, ProviderKind

logger = logging.getLogger(__name__)


def create_adapter(config: ProviderConfig, *, client: httpx.AsyncClient | None = None) -> ProviderAdapter:
    match config.kind:
        case ProviderKind.OPENAI:
            return OpenAIAdapter(config, client=client)
        case ProviderKind.CLAUDE:
            return ClaudeAdapter(config, client=client)
        case ProviderKind.LOCAL_LLAMA:
            return LocalLlamaAdapter(config, client=client)
        case ProviderKind.DEEPSEEK:
            return DeepSeekAdapter(config, client=client)
        case _:
            assert_never(config.kind)


class ProviderRegistry:
    """Holds provider adapters plus the active and embedding selections.

    Health snapshots are memoised for `health_cache_seconds` so per-request
    selection does not probe every backend on every message.
    """

    def __init__(
        self,
        adapters: Iterable[ProviderAdapter] = (),
        *,
        health_cache_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapters: dict[ProviderKind, ProviderAdapter] = {}
        self._active: ProviderKind | None = None
        self._embedding: ProviderKind | None = None
        self._health_cache_seconds = health_cache_seconds
        self._clock = clock
        self._health: dict[ProviderKind, tuple[float, HealthSnapshot]] = {}
        for adapter in adapters:
            self.register(adapter)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        health_cache_seconds: float = 30.0,
    ) -> "ProviderRegistry":
        registry = cls(
            (create_adapter(config) for config in settings.provider_configs()),
            health_cache_seconds=health_cache_seconds,
        )
        if settings.default_llm_provider in registry._adapters:
            registry.set_active(settings.default_llm_provider)
        if settings.embedding_provider in registry._adapters:
            try:
                registry.set_embedding_provider(settings.embedding_provider)
            except CapabilityNotSupported as exc:
                logger.warning("Keeping current embedding provider: %s", exc)
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.kind in self._adapters:
            raise ValueError(f"Provider already registered: {adapter.kind.value}")
        self._adapters[adapter.kind] = adapter
        if self._active is None:
            self._active = adapter.kind
        if self._embedding is None and adapter.supports_embeddings:
            self._embedding = adapter.kind

    async def initialize(self) -> list[ProviderKind]:
        """Probe every adapter once; failures are logged and left uninitialized."""
        ready: list[ProviderKind] = []
        for kind, adapter in self._adapters.items():
            try:
                await adapter.initialize()
            except (ProviderTimeout, ProviderRequestError) as exc:
                logger.warning("Failed to initialize provider %s: %s", kind.value, exc)
                continue
            ready.append(kind)
        return ready

    def kinds(self) -> list[ProviderKind]:
        return list(self._adapters)

    def list_providers(self) -> list[ProviderDescriptor]:
        return [adapter.descriptor() for adapter in self._adapters.values()]

    def get_provider(self, kind: ProviderKind | str) -> ProviderAdapter:
        adapter = self._adapters.get(ProviderKind(kind))
        if adapter is None:
            raise KeyError(f"Provider not configured: {ProviderKind(kind).value}")
        return adapter

    def get_active(self) -> ProviderAdapter:
        if self._active is None:
            raise ProviderUnavailable("No provider is configured")
        return self._adapters[self._active]

    def set_active(self, kind: ProviderKind | str) -> ProviderAdapter:
        adapter = self.get_provider(kind)
        if self._active is not adapter.kind:
            logger.info("Active provider set to %s", adapter.name)
        self._active = adapter.kind
        return adapter

    def get_embedding_provider(self) -> ProviderAdapter:
        if self._embedding is None:
            raise CapabilityNotSupported("No configured provider supports embeddings")
        return self._adapters[self._embedding]

    def set_embedding_provider(self, kind: ProviderKind | str) -> ProviderAdapter:
        adapter = self.get_provider(kind)
        if not adapter.supports_embeddings:
            raise CapabilityNotSupported(f"{adapter.name} does not support embeddings")
        self._embedding = adapter.kind
        return adapter

    async def health_snapshot(self, *, refresh: bool = False) -> dict[ProviderKind, HealthSnapshot]:
        now = self._clock()
        stale = [
            kind
            for kind in self._adapters
            if refresh
            or kind not in self._health
            or now - self._health[kind][0] > self._health_cache_seconds
        ]
        if stale:
            snapshots = await asyncio.gather(*(self._adapters[kind].health() for kind in stale))
            for kind, snapshot in zip(stale, snapshots, strict=True):
                self._health[kind] = (now, snapshot)
        return {kind: self._health[kind][1] for kind in self._adapters}

    def cost_estimates(self, prompt_tokens: int, completion_tokens: int = 100) -> dict[ProviderKind, float]:
        return {
            kind: adapter.estimate_cost(prompt_tokens, completion_tokens)
            for kind, adapter in self._adapters.items()
        }

    async def aclose(self) -> None:
        for kind, adapter in self._adapters.items():
            await adapter.aclose()
            logger.info("Provider %s disconnected", kind.value)
