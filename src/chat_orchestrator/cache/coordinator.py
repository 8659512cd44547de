"""Two-tier cache coordinator with read-through backfill."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, TypeVar

from chat_orchestrator.cache.keys import CacheEntryType, CacheKeyBuilder
from chat_orchestrator.cache.store import CacheStore
from chat_orchestrator.config import CacheConfig
from chat_orchestrator.errors import CacheBackendError
from chat_orchestrator.types import CacheStats, HealthStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CoordinatorMetrics:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_latency_ms: float = 0.0
    peak_latency_ms: float = 0.0
    last_error: str | None = None
    last_error_at: str | None = None
    backfills_failed: int = 0


@dataclass(slots=True)
class CacheHealth:
    status: HealthStatus
    primary_reachable: bool
    fallback_reachable: bool | None
    metrics: CoordinatorMetrics


@dataclass(slots=True)
class CacheOperation:
    op: Literal["get", "set", "delete"]
    key: str
    value: Any = None
    ttl_seconds: float | None = None


@dataclass(slots=True)
class OperationResult:
    key: str
    success: bool
    value: Any = None


@dataclass(slots=True)
class BatchResult:
    results: list[OperationResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count


class CacheCoordinator:
    """Single cache surface over a primary and an optional fallback tier.

    Reads try primary then fallback; a fallback hit is written back to primary
    by a detached task. Writes, deletes, and clears go to both tiers and
    succeed if either tier succeeds. Every tier call is bounded by
    `operation_timeout_seconds`; a tier that times out or raises
    `CacheBackendError` is skipped and the failure is absorbed here.
    """

    def __init__(
        self,
        primary: CacheStore,
        fallback: CacheStore | None = None,
        *,
        config: CacheConfig | None = None,
        key_builder: CacheKeyBuilder | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.config = config or CacheConfig()
        self.keys = key_builder or CacheKeyBuilder(self.config.namespace)
        self.metrics = CoordinatorMetrics()
        self._backfills: set[asyncio.Task[bool]] = set()

    async def get(self, key: str) -> Any | None:
        start = time.perf_counter()
        error: str | None = None
        found = False
        try:
            try:
                value = await self._bounded("get", self.primary.get(key))
                if value is not None:
                    found = True
                    return value
            except CacheBackendError as exc:
                error = str(exc)
                logger.warning("Primary cache GET failed for %s: %s", key, exc)

            if self.fallback is None:
                return None
            try:
                value = await self._bounded("get", self.fallback.get(key))
            except CacheBackendError as exc:
                error = error or str(exc)
                logger.warning("Fallback cache GET failed for %s: %s", key, exc)
                return None
            if value is not None:
                found = True
                self._schedule_backfill(key, value)
            return value
        finally:
            self._record(start, found, error)

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> bool:
        """Write to both tiers. `None` marks an absent entry and is rejected."""
        if value is None:
            raise ValueError("None cannot be cached; it marks an absent entry")
        start = time.perf_counter()
        success, error = await self._apply_bool("set", lambda store: store.set(key, value, ttl_seconds))
        self._record(start, success, error)
        return success

    async def delete(self, key: str) -> bool:
        start = time.perf_counter()
        success, error = await self._apply_bool("delete", lambda store: store.delete(key))
        self._record(start, success, error)
        return success

    async def clear(self, pattern: str | None = None) -> int:
        start = time.perf_counter()
        total = 0
        error: str | None = None
        for tier, store in self._tiers():
            try:
                total += await self._bounded("clear", store.clear(pattern))
            except CacheBackendError as exc:
                error = error or str(exc)
                logger.warning("%s cache CLEAR failed: %s", tier.capitalize(), exc)
        self._record(start, error is None or total > 0, error)
        return total

    async def get_for_tenant(
        self,
        entry_type: CacheEntryType,
        tenant_id: str,
        identifier: str,
        *,
        user_id: str | None = None,
    ) -> Any | None:
        return await self.get(self.keys.build(entry_type, identifier, tenant_id=tenant_id, user_id=user_id))

    async def set_for_tenant(
        self,
        entry_type: CacheEntryType,
        tenant_id: str,
        identifier: str,
        value: Any,
        *,
        user_id: str | None = None,
        ttl_seconds: float | None = None,
    ) -> bool:
        key = self.keys.build(entry_type, identifier, tenant_id=tenant_id, user_id=user_id)
        return await self.set(key, value, ttl_seconds)

    async def invalidate_tenant(self, tenant_id: str) -> int:
        cleared = 0
        for pattern in self.keys.tenant_patterns(tenant_id):
            cleared += await self.clear(pattern)
        logger.info("Invalidated %d cache entries for tenant %s", cleared, tenant_id)
        return cleared

    async def batch(self, operations: list[CacheOperation]) -> BatchResult:
        result = BatchResult()
        for operation in operations:
            if operation.op == "get":
                value = await self.get(operation.key)
                result.results.append(OperationResult(operation.key, value is not None, value))
            elif operation.op == "set":
                ok = await self.set(operation.key, operation.value, operation.ttl_seconds)
                result.results.append(OperationResult(operation.key, ok))
            elif operation.op == "delete":
                ok = await self.delete(operation.key)
                result.results.append(OperationResult(operation.key, ok))
            else:
                raise ValueError(f"Unsupported cache operation: {operation.op}")
        return result

    async def health(self) -> CacheHealth:
        primary_up = await self._reachable(self.primary)
        fallback_up = await self._reachable(self.fallback) if self.fallback is not None else None
        if primary_up:
            status = HealthStatus.HEALTHY
        elif fallback_up:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY
        return CacheHealth(status, primary_up, fallback_up, self.metrics)

    async def stats(self) -> dict[str, Any]:
        tiers: dict[str, Any] = {}
        for tier, store in self._tiers():
            try:
                tier_stats: CacheStats | None = await self._bounded("stats", store.stats())
            except CacheBackendError as exc:
                logger.warning("%s cache STATS failed: %s", tier.capitalize(), exc)
                tier_stats = None
            tiers[tier] = (
                {"backend": store.name, **asdict(tier_stats), "hit_rate": tier_stats.hit_rate}
                if tier_stats is not None
                else {"backend": store.name, "error": "unreachable"}
            )
        return {**tiers, "metrics": asdict(self.metrics)}

    async def drain(self) -> None:
        """Wait for in-flight backfill tasks to finish."""
        if self._backfills:
            await asyncio.gather(*self._backfills, return_exceptions=True)

    def _tiers(self) -> list[tuple[str, CacheStore]]:
        tiers: list[tuple[str, CacheStore]] = [("primary", self.primary)]
        if self.fallback is not None:
            tiers.append(("fallback", self.fallback))
        return tiers

    async def _apply_bool(
        self, name: str, call: Callable[[CacheStore], Awaitable[bool]]
    ) -> tuple[bool, str | None]:
        success = False
        error: str | None = None
        for tier, store in self._tiers():
            try:
                success = bool(await self._bounded(name, call(store))) or success
            except CacheBackendError as exc:
                error = error or str(exc)
                logger.warning("%s cache %s failed: %s", tier.capitalize(), name.upper(), exc)
        return success, error

    def _schedule_backfill(self, key: str, value: Any) -> None:
        task = asyncio.create_task(
            self._bounded("backfill", self.primary.set(key, value, self.config.backfill_ttl_seconds))
        )
        self._backfills.add(task)
        task.add_done_callback(lambda done: self._on_backfill_done(key, done))

    def _on_backfill_done(self, key: str, task: asyncio.Task[bool]) -> None:
        self._backfills.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.metrics.backfills_failed += 1
            self._note_error(str(exc))
            logger.warning("Failed to backfill primary cache for %s: %s", key, exc)

    async def _bounded(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, self.config.operation_timeout_seconds)
        except TimeoutError as exc:
            raise CacheBackendError(
                f"cache {operation} timed out after {self.config.operation_timeout_seconds}s"
            ) from exc

    async def _reachable(self, store: CacheStore | None) -> bool:
        if store is None:
            return False
        try:
            return await self._bounded("ping", store.ping())
        except CacheBackendError:
            return False

    def _record(self, start: float, success: bool, error: str | None) -> None:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics = self.metrics
        metrics.total_operations += 1
        if success:
            metrics.successful_operations += 1
        else:
            metrics.failed_operations += 1
        metrics.average_latency_ms += (latency_ms - metrics.average_latency_ms) / metrics.total_operations
        metrics.peak_latency_ms = max(metrics.peak_latency_ms, latency_ms)
        if error is not None:
            self._note_error(error)

    def _note_error(self, error: str) -> None:
        self.metrics.last_error = error
        self.metrics.last_error_at = datetime.now(timezone.utc).isoformat()
