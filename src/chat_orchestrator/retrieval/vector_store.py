"""Vector store interface and in-process adapter."""

from __future__ import annotations

from dataclasses import dataclass
from math import sqrt
from typing import Any, Protocol

from chat_orchestrator.retrieval.embedder import Embedder
from chat_orchestrator.types import KnowledgeDocument, Passage


class VectorStore(Protocol):
    """Minimal vector similarity contract for knowledge retrieval."""

    async def upsert(self, documents: list[KnowledgeDocument]) -> int:
        """Insert or update documents; return how many were written."""

    async def search(
        self,
        query_text: str,
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Passage]:
        """Return up to `top_k` passages ordered by descending similarity."""


@dataclass(slots=True)
class _StoredVector:
    document: KnowledgeDocument
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping."""

    def __init__(self, embedder: Embedder) -> None:
        self.embedder = embedder
        self._store: dict[str, _StoredVector] = {}

    def __len__(self) -> int:
        return len(self._store)

    async def upsert(self, documents: list[KnowledgeDocument]) -> int:
        embeddings = await self.embedder.embed_documents([doc.content for doc in documents])
        for document, embedding in zip(documents, embeddings, strict=True):
            self._store[document.doc_id] = _StoredVector(document=document, embedding=embedding)
        return len(documents)

    async def search(
        self,
        query_text: str,
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[Passage]:
        query_embedding = await self.embedder.embed_query(query_text)
        candidates = [
            rec
            for rec in self._store.values()
            if _metadata_match(rec.document.metadata, metadata_filter)
        ]
        ranked = sorted(
            (
                (rec, _cosine_similarity(query_embedding, rec.embedding))
                for rec in candidates
            ),
            key=lambda item: item[1],
            reverse=True,
        )
        return [
            Passage(
                content=rec.document.content,
                score=score,
                metadata={**rec.document.metadata, "doc_id": rec.document.doc_id},
            )
            for rec, score in ranked[:top_k]
        ]


def _metadata_match(
    metadata: dict[str, Any], metadata_filter: dict[str, Any] | None
) -> bool:
    if not metadata_filter:
        return True
    for key, value in metadata_filter.items():
        if metadata.get(key) != value:
            return False
    return True


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
