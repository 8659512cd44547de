"""Embedding abstractions and deterministic baseline implementation."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

from chat_orchestrator.config import RetrievalConfig
from chat_orchestrator.providers.registry import ProviderRegistry

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_PAIR_WEIGHT = 0.5


class Embedder(ABC):
    """Embedder interface used by the knowledge store."""

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class HashingEmbedder(Embedder):
    """Deterministic signed-hash embedding of knowledge snippets and queries.

    Text is lowercased and split on non-alphanumerics so "insurance?" and
    "insurance" share a bucket; tokens shorter than `min_token_chars` are
    dropped. Adjacent word pairs are hashed at half weight so that "health
    insurance" and "car insurance" do not collapse onto the same vector.
    Used for local runs and tests; production deployments use
    `ProviderEmbedder` backed by the registry's embedding provider.
    """

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        config = config or RetrievalConfig()
        self.dimension = config.embedding_dimension
        self.min_token_chars = config.min_token_chars

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def tokenize(self, text: str) -> list[str]:
        return [token for token in _TOKEN_RE.findall(text.lower()) if len(token) >= self.min_token_chars]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        tokens = self.tokenize(text)
        features = [(token, 1.0) for token in tokens]
        features.extend((f"{left} {right}", _PAIR_WEIGHT) for left, right in zip(tokens, tokens[1:]))
        for feature, weight in features:
            digest = blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            vector[bucket] += -weight if digest[4] & 1 else weight

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class ProviderEmbedder(Embedder):
    """Delegates to whichever provider the registry designates for embeddings."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        provider = self.registry.get_embedding_provider()
        return [await provider.embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return await self.registry.get_embedding_provider().embed(text)
