"""Redis-backed cache store."""

from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from chat_orchestrator.config import CacheConfig
from chat_orchestrator.errors import CacheBackendError
from chat_orchestrator.types import CacheStats

logger = logging.getLogger(__name__)


class RedisCacheStore:
    """Remote cache tier storing JSON-encoded values with native key expiry.

    Every backend failure is counted and re-raised as `CacheBackendError` so the
    coordinator can continue on the other tier.
    """

    name = "redis"

    def __init__(self, client: Any, config: CacheConfig | None = None) -> None:
        self._client = client
        self.config = config or CacheConfig()
        self._stats = CacheStats()

    @classmethod
    def from_url(cls, url: str, config: CacheConfig | None = None) -> "RedisCacheStore":
        config = config or CacheConfig()
        client = redis_async.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=config.operation_timeout_seconds,
            socket_timeout=config.operation_timeout_seconds,
        )
        return cls(client, config)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise self._backend_error("get", exc) from exc
        if raw is None:
            self._stats.misses += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            await self._discard_corrupt(key)
            raise self._backend_error("get", exc) from exc
        self._stats.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        if value is None:
            raise ValueError("None cannot be cached; it marks an absent entry")
        ttl = ttl_seconds if ttl_seconds is not None else self.config.default_ttl_seconds
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise self._backend_error("set", exc) from exc
        try:
            await self._client.set(key, payload, px=max(1, int(ttl * 1000)))
        except (RedisError, OSError) as exc:
            raise self._backend_error("set", exc) from exc
        self._stats.sets += 1
        return True

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._client.delete(key)
        except (RedisError, OSError) as exc:
            raise self._backend_error("delete", exc) from exc
        if removed:
            self._stats.deletes += 1
        return bool(removed)

    async def clear(self, pattern: str | None = None) -> int:
        match = pattern or f"{self.config.namespace}:*"
        count = 0
        try:
            batch: list[str] = []
            async for key in self._client.scan_iter(match=match, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    count += await self._client.delete(*batch)
                    batch = []
            if batch:
                count += await self._client.delete(*batch)
        except (RedisError, OSError) as exc:
            raise self._backend_error("clear", exc) from exc
        self._stats.deletes += count
        return count

    async def stats(self) -> CacheStats:
        size = 0
        try:
            async for _ in self._client.scan_iter(match=f"{self.config.namespace}:*", count=500):
                size += 1
        except (RedisError, OSError) as exc:
            raise self._backend_error("stats", exc) from exc
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            sets=self._stats.sets,
            deletes=self._stats.deletes,
            errors=self._stats.errors,
            size=size,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as exc:
            self._stats.errors += 1
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _discard_corrupt(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except (RedisError, OSError) as exc:
            logger.warning("Could not drop undecodable cache entry %s: %s", key, exc)

    def _backend_error(self, operation: str, exc: Exception) -> CacheBackendError:
        self._stats.errors += 1
        return CacheBackendError(f"redis {operation} failed: {exc}")
