import asyncio
from collections.abc import Callable
from fnmatch import fnmatchcase
from typing import Any

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_orchestrator.cache.coordinator import CacheCoordinator
from chat_orchestrator.cache.store import InMemoryCacheStore
from chat_orchestrator.config import ModelProfile, OrchestratorConfig, ProviderConfig
from chat_orchestrator.errors import CacheBackendError
from chat_orchestrator.obs.tracing import TraceStore
from chat_orchestrator.orchestration.orchestrator import RequestOrchestrator
from chat_orchestrator.orchestration.tenants import TenantConfigSource
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.providers.registry import ProviderRegistry
from chat_orchestrator.providers.selector import ProviderSelector
from chat_orchestrator.retrieval.embedder import HashingEmbedder
from chat_orchestrator.retrieval.retriever import KnowledgeRetriever
from chat_orchestrator.retrieval.vector_store import InMemoryVectorStore, VectorStore
from chat_orchestrator.types import CacheStats, ChatMessage, Completion, ProviderKind


def _refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("fake adapters never reach the network", request=request)


class FakeAdapter(ProviderAdapter):
    """Scriptable adapter: controllable probe latency, replies, failures, and gating."""

    default_model = "fake-model"
    model_profiles = {
        "fake-model": ModelProfile(max_context_length=4096, cost_per_token=0.00001, average_latency_ms=100.0)
    }

    def __init__(
        self,
        config: ProviderConfig,
        *,
        reply: str = "Comprehensive cover protects your own vehicle as well as third parties.",
        probe_delay: float = 0.0,
        probe_fails: bool = False,
        complete_delay: float = 0.0,
        complete_error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        super().__init__(config, client=httpx.AsyncClient(transport=httpx.MockTransport(_refuse)))
        self.reply = reply
        self.probe_delay = probe_delay
        self.probe_fails = probe_fails
        self.complete_delay = complete_delay
        self.complete_error = complete_error
        self.gate = gate
        self.calls: list[list[ChatMessage]] = []
        self.active = 0
        self.peak_active = 0

    async def _complete(self, messages: list[ChatMessage], *, max_tokens: int, temperature: float) -> Completion:
        self.calls.append(messages)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.complete_delay:
                await asyncio.sleep(self.complete_delay)
            if self.complete_error is not None:
                raise self.complete_error
            return Completion(
                text=self.reply,
                prompt_tokens=40,
                completion_tokens=20,
                finish_reason="stop",
                model=self.model,
            )
        finally:
            self.active -= 1

    async def _probe(self) -> None:
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if self.probe_fails:
            raise httpx.ConnectError("probe refused")


def make_fake_provider(
    kind: ProviderKind,
    *,
    cost_per_token: float = 0.00001,
    **kwargs: Any,
) -> FakeAdapter:
    adapter_cls = type(f"Fake{kind.name.title().replace('_', '')}Adapter", (FakeAdapter,), {"kind": kind})
    config = ProviderConfig(
        kind=kind,
        model="fake-model",
        probe_timeout_seconds=1.0,
        profile=ModelProfile(max_context_length=4096, cost_per_token=cost_per_token, average_latency_ms=100.0),
    )
    return adapter_cls(config, **kwargs)


class FailingCacheStore:
    """Cache tier whose backend is permanently unreachable."""

    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    async def get(self, key: str) -> Any | None:
        self.calls += 1
        raise CacheBackendError("connection refused")

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        self.calls += 1
        raise CacheBackendError("connection refused")

    async def delete(self, key: str) -> bool:
        self.calls += 1
        raise CacheBackendError("connection refused")

    async def clear(self, pattern: str | None = None) -> int:
        self.calls += 1
        raise CacheBackendError("connection refused")

    async def stats(self) -> CacheStats:
        raise CacheBackendError("connection refused")

    async def ping(self) -> bool:
        return False


class FakeRedis:
    """Subset of the redis.asyncio client used by the cache tier.

    `down` refuses every call; `hang` blocks every call until cancelled.
    """

    def __init__(self, *, down: bool = False, hang: bool = False) -> None:
        self.data: dict[str, str] = {}
        self.expiry_ms: dict[str, int] = {}
        self.down = down
        self.hang = hang

    async def _check(self) -> None:
        if self.hang:
            await asyncio.Event().wait()
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def get(self, key: str) -> str | None:
        await self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        await self._check()
        self.data[key] = value
        if px is not None:
            self.expiry_ms[key] = px
        return True

    async def delete(self, *keys: str) -> int:
        await self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan_iter(self, match: str = "*", count: int = 10) -> Any:
        await self._check()
        for key in list(self.data):
            if fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        await self._check()
        return True

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_provider() -> Callable[..., FakeAdapter]:
    return make_fake_provider


@pytest.fixture
def failing_store() -> FailingCacheStore:
    return FailingCacheStore()


@pytest.fixture
def fake_redis() -> type[FakeRedis]:
    return FakeRedis


@pytest.fixture
def build_orchestrator() -> Callable[..., RequestOrchestrator]:
    def _build(
        providers: list[ProviderAdapter],
        *,
        config: OrchestratorConfig | None = None,
        tenants: TenantConfigSource | None = None,
        vector_store: VectorStore | None = None,
        cache: CacheCoordinator | None = None,
    ) -> RequestOrchestrator:
        config = config or OrchestratorConfig(health_cache_seconds=0.0)
        registry = ProviderRegistry(providers, health_cache_seconds=config.health_cache_seconds)
        cache = cache or CacheCoordinator(InMemoryCacheStore())
        retriever = KnowledgeRetriever(vector_store or InMemoryVectorStore(HashingEmbedder()), cache=cache)
        return RequestOrchestrator(
            registry=registry,
            selector=ProviderSelector(registry, quality_preference=config.quality_preference),
            retriever=retriever,
            cache=cache,
            trace_store=TraceStore(),
            tenants=tenants,
            config=config,
        )

    return _build
