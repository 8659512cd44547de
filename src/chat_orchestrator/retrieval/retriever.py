"""Knowledge retriever with tenant-scoped search and unfiltered fallback."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any

from chat_orchestrator.cache.coordinator import CacheCoordinator
from chat_orchestrator.cache.keys import CacheEntryType, CacheKeyBuilder
from chat_orchestrator.config import RetrievalConfig
from chat_orchestrator.errors import RetrievalDegraded
from chat_orchestrator.retrieval.vector_store import VectorStore
from chat_orchestrator.types import KnowledgeDocument, Passage

logger = logging.getLogger(__name__)


class KnowledgeRetriever:
    """Searches the vector store for supporting passages.

    A filtered (tenant-scoped) search is attempted first. Any backend error
    (including a search exceeding `search_timeout_seconds`) triggers exactly
    one retry without the filter; if that also fails the result is an empty
    list. Successful results are cached briefly under the query text,
    `top_k`, and the serialized filter. Degraded (unfiltered) results are
    returned but not cached, so the next request retries the scoped search.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        *,
        cache: CacheCoordinator | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.cache = cache
        self.config = config or RetrievalConfig()
        self.keys = cache.keys if cache is not None else CacheKeyBuilder()
        self.degraded_count = 0

    def build_query(self, text: str, topic: str | None = None) -> str:
        parts = [text.strip()]
        if topic and topic not in ("general", "unknown"):
            parts.append(topic)
        parts.append(self.config.locale_token)
        return " ".join(part for part in parts if part)

    async def search_for_context(
        self,
        message: str,
        *,
        tenant_id: str,
        topic: str | None = None,
        top_k: int | None = None,
    ) -> list[Passage]:
        return await self.search(
            self.build_query(message, topic),
            top_k,
            {"tenant_id": tenant_id},
        )

    async def search(
        self,
        query_text: str,
        top_k: int | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Passage]:
        k = top_k or self.config.top_k
        cache_key = self._cache_key(query_text, k, metadata_filter)
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return [Passage(**item) for item in cached]

        try:
            passages, degraded = await self._search_with_fallback(query_text, k, metadata_filter)
        except RetrievalDegraded as exc:
            self.degraded_count += 1
            logger.warning("Knowledge retrieval unavailable, continuing without passages: %s", exc)
            return []

        passages = [self._trim(passage) for passage in passages[:k]]
        if degraded:
            self.degraded_count += 1
        elif self.cache is not None:
            await self.cache.set(
                cache_key,
                [asdict(passage) for passage in passages],
                self.config.cache_ttl_seconds,
            )
        return passages

    async def add_documents(self, documents: list[KnowledgeDocument]) -> int:
        written = await self.vector_store.upsert(documents)
        if self.cache is not None:
            await self.cache.clear(self.keys.type_pattern(CacheEntryType.KNOWLEDGE))
        logger.info("Added %d documents to the knowledge base", written)
        return written

    async def _search_with_fallback(
        self,
        query_text: str,
        top_k: int,
        metadata_filter: dict[str, Any] | None,
    ) -> tuple[list[Passage], bool]:
        try:
            return await self._bounded_search(query_text, top_k, metadata_filter), False
        except Exception as exc:
            if not metadata_filter:
                raise RetrievalDegraded(f"search failed: {exc}") from exc
            logger.warning("Filtered search failed (%s); retrying without filter", exc)

        try:
            return await self._bounded_search(query_text, top_k, None), True
        except Exception as exc:
            raise RetrievalDegraded(f"filtered and unfiltered search failed: {exc}") from exc

    async def _bounded_search(
        self, query_text: str, top_k: int, metadata_filter: dict[str, Any] | None
    ) -> list[Passage]:
        try:
            return await asyncio.wait_for(
                self.vector_store.search(query_text, top_k, metadata_filter),
                self.config.search_timeout_seconds,
            )
        except TimeoutError as exc:
            raise RetrievalDegraded(
                f"vector search timed out after {self.config.search_timeout_seconds}s"
            ) from exc

    def _cache_key(self, query_text: str, top_k: int, metadata_filter: dict[str, Any] | None) -> str:
        identifier = json.dumps(
            {"q": query_text, "k": top_k, "f": metadata_filter or {}},
            sort_keys=True,
            default=str,
        )
        tenant_id = (metadata_filter or {}).get("tenant_id")
        return self.keys.build(
            CacheEntryType.KNOWLEDGE,
            identifier,
            tenant_id=str(tenant_id) if tenant_id is not None else None,
        )

    def _trim(self, passage: Passage) -> Passage:
        limit = self.config.max_passage_chars
        if len(passage.content) <= limit:
            return passage
        return Passage(content=passage.content[:limit], score=passage.score, metadata=passage.metadata)
