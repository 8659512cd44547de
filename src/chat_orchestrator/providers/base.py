"""Provider adapter contract shared by all generation backends."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from chat_orchestrator.config import HealthThresholds, ModelProfile, ProviderConfig
from chat_orchestrator.errors import (
    CapabilityNotSupported,
    ProviderRequestError,
    ProviderTimeout,
)
from chat_orchestrator.types import (
    Capabilities,
    ChatMessage,
    Completion,
    HealthSnapshot,
    HealthStatus,
    ProviderDescriptor,
    ProviderKind,
)

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (asyncio.TimeoutError, httpx.HTTPError, KeyError, IndexError, ValueError)


class ProviderAdapter(ABC):
    """One generation backend reached over HTTP.

    Subclasses implement the wire-level `_complete`, `_embed` and `_probe`
    hooks; this base class owns timeouts, error translation, the rolling
    request/error counters, and health classification against the configured
    `HealthThresholds`.
    """

    kind: ClassVar[ProviderKind]
    default_model: ClassVar[str]
    model_profiles: ClassVar[dict[str, ModelProfile]]
    default_thresholds: ClassVar[HealthThresholds] = HealthThresholds()
    supports_embeddings: ClassVar[bool] = False
    supports_streaming: ClassVar[bool] = True

    def __init__(self, config: ProviderConfig, *, client: httpx.AsyncClient | None = None) -> None:
        if config.kind is not self.kind:
            raise ValueError(f"{type(self).__name__} cannot serve provider kind {config.kind.value}")
        self.config = config
        self.thresholds = config.thresholds or self.default_thresholds
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = client is None
        self.initialized = False
        self._request_count = 0
        self._error_count = 0
        self._total_latency_ms = 0.0

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    @property
    def error_rate(self) -> float:
        if self._request_count == 0:
            return 0.0
        return self._error_count / self._request_count

    @property
    def average_latency_ms(self) -> float:
        successes = self._request_count - self._error_count
        if successes <= 0:
            return 0.0
        return self._total_latency_ms / successes

    async def initialize(self) -> None:
        """Verify connectivity once; raises when the backend cannot be reached."""
        await self.probe()
        self.initialized = True
        logger.info("Provider %s initialized with model %s", self.name, self.model)

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> Completion:
        bound = timeout or self.config.timeout_seconds
        self._request_count += 1
        start = time.perf_counter()
        try:
            completion = await asyncio.wait_for(
                self._complete(
                    messages,
                    max_tokens=max_tokens or self.config.max_tokens,
                    temperature=self.config.temperature if temperature is None else temperature,
                ),
                timeout=bound,
            )
        except _TRANSPORT_ERRORS as exc:
            self._error_count += 1
            raise self._translate(exc, "completion", bound) from exc
        self._total_latency_ms += (time.perf_counter() - start) * 1000.0
        return completion

    async def embed(self, text: str) -> list[float]:
        if not self.supports_embeddings:
            raise CapabilityNotSupported(f"{self.name} does not support embeddings")
        bound = self.config.timeout_seconds
        try:
            return await asyncio.wait_for(self._embed(text), timeout=bound)
        except _TRANSPORT_ERRORS as exc:
            raise self._translate(exc, "embedding", bound) from exc

    async def probe(self) -> float:
        """Issue one minimal live request and return its latency in milliseconds."""
        bound = self.config.probe_timeout_seconds
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._probe(), timeout=bound)
        except _TRANSPORT_ERRORS as exc:
            raise self._translate(exc, "probe", bound) from exc
        return (time.perf_counter() - start) * 1000.0

    async def health(self) -> HealthSnapshot:
        error_rate = self.error_rate
        try:
            latency_ms = await self.probe()
        except (ProviderTimeout, ProviderRequestError) as exc:
            return HealthSnapshot(
                provider=self.kind,
                status=HealthStatus.UNHEALTHY,
                latency_ms=self.config.probe_timeout_seconds * 1000.0,
                error_rate=error_rate,
                error=str(exc),
            )

        status = HealthStatus.HEALTHY
        limits = self.thresholds
        if latency_ms > limits.degraded_latency_ms or error_rate > limits.degraded_error_rate:
            status = HealthStatus.DEGRADED
        if latency_ms > limits.unhealthy_latency_ms or error_rate > limits.unhealthy_error_rate:
            status = HealthStatus.UNHEALTHY
        return HealthSnapshot(
            provider=self.kind,
            status=status,
            latency_ms=latency_ms,
            error_rate=error_rate,
        )

    def capabilities(self) -> Capabilities:
        profile = (
            self.config.profile
            or self.model_profiles.get(self.model)
            or self.model_profiles[self.default_model]
        )
        return Capabilities(
            supports_embeddings=self.supports_embeddings,
            supports_streaming=self.supports_streaming,
            max_context_length=profile.max_context_length,
            cost_per_token=profile.cost_per_token,
            average_latency_ms=profile.average_latency_ms,
        )

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int = 0) -> float:
        return (prompt_tokens + completion_tokens) * self.capabilities().cost_per_token

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            kind=self.kind,
            model=self.model,
            capabilities=self.capabilities(),
            initialized=self.initialized,
        )

    async def aclose(self) -> None:
        self.initialized = False
        if self._owns_client:
            await self._client.aclose()

    @abstractmethod
    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        """Perform the wire-level completion call."""

    async def _embed(self, text: str) -> list[float]:
        raise CapabilityNotSupported(f"{self.name} does not support embeddings")

    @abstractmethod
    async def _probe(self) -> None:
        """Perform the cheapest request that proves the backend is serving."""

    async def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        response = await self._client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    def _translate(self, exc: Exception, operation: str, bound: float) -> Exception:
        if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            logger.warning("%s %s timed out after %.1fs", self.name, operation, bound)
            return ProviderTimeout(f"{self.name} {operation} exceeded {bound:.1f}s")
        if isinstance(exc, httpx.HTTPError):
            logger.warning("%s %s failed: %s", self.name, operation, exc)
            return ProviderRequestError(f"{self.name} {operation} failed: {exc}")
        logger.warning("%s %s returned an unexpected payload: %r", self.name, operation, exc)
        return ProviderRequestError(f"{self.name} {operation} returned a malformed payload")


def approximate_tokens(text: str) -> int:
    """Rough token count for backends that do not report usage (~4 chars/token)."""
    return (len(text) + 3) // 4
