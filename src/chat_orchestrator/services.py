"""Construction of the service graph from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chat_orchestrator.cache.coordinator import CacheCoordinator
from chat_orchestrator.cache.redis_store import RedisCacheStore
from chat_orchestrator.cache.store import InMemoryCacheStore
from chat_orchestrator.config import RetrievalConfig, Settings
from chat_orchestrator.errors import CapabilityNotSupported
from chat_orchestrator.obs.tracing import TraceStore
from chat_orchestrator.orchestration.orchestrator import RequestOrchestrator
from chat_orchestrator.orchestration.tenants import InMemoryTenantConfigSource, TenantConfigSource
from chat_orchestrator.providers.registry import ProviderRegistry
from chat_orchestrator.providers.selector import ProviderSelector
from chat_orchestrator.retrieval.embedder import Embedder, HashingEmbedder, ProviderEmbedder
from chat_orchestrator.retrieval.retriever import KnowledgeRetriever
from chat_orchestrator.retrieval.vector_store import InMemoryVectorStore, VectorStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: Settings
    memory_store: InMemoryCacheStore
    redis_store: RedisCacheStore | None
    cache: CacheCoordinator
    registry: ProviderRegistry
    selector: ProviderSelector
    retriever: KnowledgeRetriever
    trace_store: TraceStore
    orchestrator: RequestOrchestrator

    async def startup(self) -> None:
        ready = await self.registry.initialize()
        logger.info("Providers ready: %s", ", ".join(kind.value for kind in ready) or "none")
        self.memory_store.start_sweeper()

    async def aclose(self) -> None:
        await self.cache.drain()
        await self.memory_store.aclose()
        if self.redis_store is not None:
            await self.redis_store.aclose()
        await self.registry.aclose()


def build_services(
    settings: Settings,
    *,
    registry: ProviderRegistry | None = None,
    vector_store: VectorStore | None = None,
    tenants: TenantConfigSource | None = None,
) -> Services:
    """Wire one independent service graph; nothing here is process-global."""
    orchestrator_config = settings.orchestrator_config()
    cache_config = settings.cache_config()

    memory_store = InMemoryCacheStore(cache_config)
    redis_store = RedisCacheStore.from_url(settings.redis_url, cache_config) if settings.redis_url else None
    if redis_store is not None:
        cache = CacheCoordinator(redis_store, memory_store, config=cache_config)
    else:
        cache = CacheCoordinator(memory_store, config=cache_config)

    if registry is None:
        registry = ProviderRegistry.from_settings(
            settings, health_cache_seconds=orchestrator_config.health_cache_seconds
        )
    selector = ProviderSelector(
        registry,
        quality_preference=orchestrator_config.quality_preference,
        estimated_completion_tokens=orchestrator_config.estimated_completion_tokens,
    )
    retrieval_config = RetrievalConfig()
    if vector_store is None:
        vector_store = InMemoryVectorStore(_embedder_for(registry, retrieval_config))
    retriever = KnowledgeRetriever(vector_store, cache=cache, config=retrieval_config)
    trace_store = TraceStore()
    orchestrator = RequestOrchestrator(
        registry=registry,
        selector=selector,
        retriever=retriever,
        cache=cache,
        trace_store=trace_store,
        tenants=tenants or InMemoryTenantConfigSource(),
        config=orchestrator_config,
    )
    return Services(
        settings=settings,
        memory_store=memory_store,
        redis_store=redis_store,
        cache=cache,
        registry=registry,
        selector=selector,
        retriever=retriever,
        trace_store=trace_store,
        orchestrator=orchestrator,
    )


def _embedder_for(registry: ProviderRegistry, config: RetrievalConfig) -> Embedder:
    try:
        provider = registry.get_embedding_provider()
    except CapabilityNotSupported:
        logger.info("No embedding provider configured; using hashing embeddings")
        return HashingEmbedder(config)
    logger.info("Using %s for knowledge embeddings", provider.name)
    return ProviderEmbedder(registry)
