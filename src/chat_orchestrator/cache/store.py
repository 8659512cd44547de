"""Cache store contract and the in-process implementation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from fnmatch import fnmatchcase
from typing import Any, Protocol, runtime_checkable

from chat_orchestrator.config import CacheConfig
from chat_orchestrator.types import CacheEntry, CacheStats

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheStore(Protocol):
    """Minimal async key/value contract shared by every cache tier.

    `None` is the absent marker, so `None` itself cannot be stored.
    """

    name: str

    async def get(self, key: str) -> Any | None:
        """Return the live value for `key` or `None`."""

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        """Store `value` under `key` for `ttl_seconds`."""

    async def delete(self, key: str) -> bool:
        """Remove `key`; return whether it was present."""

    async def clear(self, pattern: str | None = None) -> int:
        """Remove keys matching a glob pattern (all keys when omitted)."""

    async def stats(self) -> CacheStats:
        """Return operation counters and current size."""

    async def ping(self) -> bool:
        """Return whether the backend is reachable."""


class InMemoryCacheStore:
    """Bounded TTL store with insertion-order eviction.

    When full, the entry inserted first among those present is evicted before a
    new key is admitted. Reads do not refresh position, and overwriting an
    existing key keeps its original slot. Expiry is checked lazily on read;
    `start_sweeper` optionally purges expired entries in the background.
    """

    name = "memory"

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._sweeper: asyncio.Task[None] | None = None

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        if value is None:
            raise ValueError("None cannot be cached; it marks an absent entry")
        ttl = ttl_seconds if ttl_seconds is not None else self.config.default_ttl_seconds
        if key in self._entries:
            self._entries[key] = CacheEntry(value=value, created_at=self._clock(), ttl_seconds=ttl)
        else:
            if len(self._entries) >= self.config.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[key] = CacheEntry(value=value, created_at=self._clock(), ttl_seconds=ttl)
        self._stats.sets += 1
        return True

    async def delete(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._stats.deletes += 1
        return removed

    async def clear(self, pattern: str | None = None) -> int:
        if pattern is None:
            count = len(self._entries)
            self._entries.clear()
        else:
            doomed = [key for key in self._entries if fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
            count = len(doomed)
        self._stats.deletes += count
        return count

    async def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            sets=self._stats.sets,
            deletes=self._stats.deletes,
            errors=self._stats.errors,
            size=len(self._entries),
        )

    async def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def start_sweeper(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or self.config.sweep_interval_seconds
        if interval is None or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    async def aclose(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            purged = self.purge_expired()
            if purged:
                logger.debug("Swept %d expired cache entries", purged)
