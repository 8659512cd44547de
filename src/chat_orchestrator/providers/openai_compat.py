"""Adapters for OpenAI-compatible chat completion APIs (OpenAI, DeepSeek)."""

from __future__ import annotations

from typing import Any

from chat_orchestrator.config import HealthThresholds, ModelProfile
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.types import ChatMessage, Completion, ProviderKind


class OpenAICompatibleAdapter(ProviderAdapter):
    """Shared wire handling for `/chat/completions` style endpoints."""

    default_base_url = ""

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        data = await self._post_json(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            headers=self._headers(),
        )
        choice = data["choices"][0]
        usage: dict[str, Any] = data.get("usage") or {}
        return Completion(
            text=choice["message"].get("content") or "",
            prompt_tokens=int(usage.get("prompt_tokens", 0)),
            completion_tokens=int(usage.get("completion_tokens", 0)),
            finish_reason=choice.get("finish_reason") or "stop",
            model=data.get("model", self.model),
        )

    async def _probe(self) -> None:
        await self._post_json(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": "test"}],
                "max_tokens": 1,
                "temperature": 0,
            },
            headers=self._headers(),
        )


class OpenAIAdapter(OpenAICompatibleAdapter):
    kind = ProviderKind.OPENAI
    default_model = "gpt-3.5-turbo"
    default_base_url = "https://api.openai.com/v1"
    embedding_model = "text-embedding-ada-002"
    supports_embeddings = True
    default_thresholds = HealthThresholds(degraded_latency_ms=10_000, unhealthy_latency_ms=20_000)
    model_profiles = {
        "gpt-4": ModelProfile(max_context_length=8192, cost_per_token=0.00003, average_latency_ms=3000),
        "gpt-4-turbo": ModelProfile(
            max_context_length=128_000, cost_per_token=0.00001, average_latency_ms=2000
        ),
        "gpt-3.5-turbo": ModelProfile(
            max_context_length=4096, cost_per_token=0.0000015, average_latency_ms=1000
        ),
    }

    async def _embed(self, text: str) -> list[float]:
        data = await self._post_json(
            f"{self.base_url}/embeddings",
            {"model": self.embedding_model, "input": text},
            headers=self._headers(),
        )
        return [float(value) for value in data["data"][0]["embedding"]]


class DeepSeekAdapter(OpenAICompatibleAdapter):
    kind = ProviderKind.DEEPSEEK
    default_model = "deepseek-chat"
    default_base_url = "https://api.deepseek.com/v1"
    default_thresholds = HealthThresholds(degraded_latency_ms=8000, unhealthy_latency_ms=15_000)
    model_profiles = {
        "deepseek-chat": ModelProfile(
            max_context_length=32_768, cost_per_token=0.0000014, average_latency_ms=2000
        ),
        "deepseek-coder": ModelProfile(
            max_context_length=16_384, cost_per_token=0.0000014, average_latency_ms=2500
        ),
    }
