"""Anthropic Messages API adapter."""

from __future__ import annotations

from chat_orchestrator.config import HealthThresholds, ModelProfile
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.types import ChatMessage, Completion, ProviderKind

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeAdapter(ProviderAdapter):
    kind = ProviderKind.CLAUDE
    default_model = "claude-3-haiku-20240307"
    default_base_url = "https://api.anthropic.com/v1"
    output_cost_multiplier = 3.0
    default_thresholds = HealthThresholds(degraded_latency_ms=10_000, unhealthy_latency_ms=20_000)
    model_profiles = {
        "claude-3-opus-20240229": ModelProfile(
            max_context_length=200_000, cost_per_token=0.000015, average_latency_ms=4000
        ),
        "claude-3-sonnet-20240229": ModelProfile(
            max_context_length=200_000, cost_per_token=0.000003, average_latency_ms=2500
        ),
        "claude-3-haiku-20240307": ModelProfile(
            max_context_length=200_000, cost_per_token=0.00000025, average_latency_ms=1500
        ),
    }

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int = 0) -> float:
        per_token = self.capabilities().cost_per_token
        return prompt_tokens * per_token + completion_tokens * per_token * self.output_cost_multiplier

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def _complete(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        system_prompt = "\n\n".join(m.content for m in messages if m.role == "system")
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [
                {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
                for m in messages
                if m.role != "system"
            ],
        }
        if system_prompt:
            payload["system"] = system_prompt

        data = await self._post_json(f"{self.base_url}/messages", payload, headers=self._headers())
        blocks = data.get("content") or []
        usage = data.get("usage") or {}
        return Completion(
            text="".join(block.get("text", "") for block in blocks if block.get("type", "text") == "text"),
            prompt_tokens=int(usage.get("input_tokens", 0)),
            completion_tokens=int(usage.get("output_tokens", 0)),
            finish_reason=data.get("stop_reason") or "stop",
            model=data.get("model", self.model),
        )

    async def _probe(self) -> None:
        await self._post_json(
            f"{self.base_url}/messages",
            {
                "model": self.model,
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "test"}],
            },
            headers=self._headers(),
        )
