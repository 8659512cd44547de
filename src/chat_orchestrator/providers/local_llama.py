"""Ollama-hosted local model adapter."""

from __future__ import annotations

import logging

from chat_orchestrator.config import HealthThresholds, ModelProfile
from chat_orchestrator.providers.base import ProviderAdapter, approximate_tokens
from chat_orchestrator.types import ChatMessage, Completion, ProviderKind

logger = logging.getLogger(__name__)

_ROLE_PREFIX = {"system": "System", "user": "Human", "assistant": "Assistant"}


class LocalLlamaAdapter(ProviderAdapter):
    """Talks to an Ollama server; no API cost, looser latency thresholds."""

    kind = ProviderKind.LOCAL_LLAMA
    default_model = "llama2"
    default_base_url = "http://127.0.0.1:11434"
    embedding_model = "nomic-embed-text"
    supports_embeddings = True
    default_thresholds = HealthThresholds(degraded_latency_ms=15_000, unhealthy_latency_ms=30_000)
    model_profiles = {
        "llama2": ModelProfile(max_context_length=4096, cost_per_token=0.0, average_latency_ms=3000),
        "llama2:13b": ModelProfile(max_context_length=4096, cost_per_token=0.0, average_latency_ms=5000),
        "llama2:70b": ModelProfile(max_context_length=4096, cost_per_token=0.0, average_latency_ms=10_000),
        "mistral": ModelProfile(max_context_length=8192, cost_per_token=0.0, average_latency_ms=2500),
        "codellama": ModelProfile(max_context_length=16_384, cost_per_token=0.0, average_latency_ms=4000),
    }

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int = 0) -> float:
        return 0.0

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        prompt = _to_prompt(messages)
        data = await self._post_json(
            f"{self.base_url}/api/generate",
            {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": temperature,
                    "num_predict": max_tokens,
                    "top_k": 40,
                    "top_p": 0.9,
                },
            },
        )
        text = data.get("response") or ""
        return Completion(
            text=text,
            prompt_tokens=approximate_tokens(prompt),
            completion_tokens=approximate_tokens(text),
            finish_reason="stop" if data.get("done", True) else "length",
            model=data.get("model", self.model),
        )

    async def _embed(self, text: str) -> list[float]:
        data = await self._post_json(
            f"{self.base_url}/api/embeddings",
            {"model": self.embedding_model, "prompt": text},
        )
        return [float(value) for value in data["embedding"]]

    async def _probe(self) -> None:
        response = await self._client.get(f"{self.base_url}/api/tags")
        response.raise_for_status()
        available = [model.get("name", "") for model in response.json().get("models", [])]
        if not any(name.startswith(self.model) for name in available):
            logger.warning("Model %s not found on %s; available: %s", self.model, self.base_url, available)


def _to_prompt(messages: list[ChatMessage]) -> str:
    lines = [
        f"{_ROLE_PREFIX.get(message.role, 'Human')}: {message.content}\n\n" for message in messages
    ]
    return "".join(lines) + "Assistant: "
