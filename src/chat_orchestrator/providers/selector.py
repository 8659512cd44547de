"""Policy-driven choice of the generation provider for one request."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chat_orchestrator.errors import ProviderUnavailable
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.providers.registry import ProviderRegistry
from chat_orchestrator.types import ConversationStage, HealthSnapshot, ProviderKind, SelectionPolicy

logger = logging.getLogger(__name__)

_QUALITY_PATTERN = re.compile(r"\b(premium|calculat\w*|complex\w*|compar\w*)\b", re.IGNORECASE)
_SPEED_PATTERN = re.compile(r"^\W*(hello|hi|hey|yes|no|ok|okay|thanks|thank you)\b", re.IGNORECASE)
_SHORT_MESSAGE_CHARS = 20

DEFAULT_QUALITY_PREFERENCE = (ProviderKind.CLAUDE, ProviderKind.OPENAI)


@dataclass(slots=True)
class Selection:
    adapter: ProviderAdapter
    policy: SelectionPolicy
    snapshot: HealthSnapshot

    @property
    def kind(self) -> ProviderKind:
        return self.adapter.kind


def policy_for_message(message: str, stage: ConversationStage | None = None) -> SelectionPolicy:
    """Map message heuristics to a concrete policy.

    Calculation/complexity wording or a decision-stage conversation selects
    quality; short or greeting-like messages select speed; the rest select cost.
    """
    if stage is ConversationStage.DECISION or _QUALITY_PATTERN.search(message):
        return SelectionPolicy.QUALITY
    if len(message.strip()) < _SHORT_MESSAGE_CHARS or _SPEED_PATTERN.search(message):
        return SelectionPolicy.SPEED
    return SelectionPolicy.COST


class ProviderSelector:
    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        quality_preference: list[ProviderKind] | tuple[ProviderKind, ...] = DEFAULT_QUALITY_PREFERENCE,
        estimated_completion_tokens: int = 100,
    ) -> None:
        self.registry = registry
        self.quality_preference = tuple(quality_preference)
        self.estimated_completion_tokens = estimated_completion_tokens

    async def select(
        self,
        policy: SelectionPolicy,
        *,
        prompt_tokens: int,
        completion_tokens: int | None = None,
        message: str = "",
        stage: ConversationStage | None = None,
        preferred: ProviderKind | None = None,
    ) -> Selection:
        """Choose a healthy provider and mark it active.

        Raises:
            ProviderUnavailable: when no candidate is healthy under the policy.
        """
        if policy is SelectionPolicy.AUTO:
            policy = policy_for_message(message, stage)

        snapshots = await self.registry.health_snapshot()
        healthy = {kind: snap for kind, snap in snapshots.items() if snap.is_healthy}
        if not healthy:
            raise ProviderUnavailable(f"No healthy provider available for policy {policy.value}")

        if preferred is not None and preferred in healthy:
            chosen = preferred
        else:
            chosen = self._apply(policy, healthy, prompt_tokens, completion_tokens)

        adapter = self.registry.set_active(chosen)
        logger.debug("Selected provider %s under %s policy", chosen.value, policy.value)
        return Selection(adapter=adapter, policy=policy, snapshot=healthy[chosen])

    def _apply(
        self,
        policy: SelectionPolicy,
        healthy: dict[ProviderKind, HealthSnapshot],
        prompt_tokens: int,
        completion_tokens: int | None,
    ) -> ProviderKind:
        match policy:
            case SelectionPolicy.COST:
                completion = completion_tokens or self.estimated_completion_tokens
                return min(
                    healthy,
                    key=lambda kind: self.registry.get_provider(kind).estimate_cost(prompt_tokens, completion),
                )
            case SelectionPolicy.SPEED:
                return min(healthy, key=lambda kind: healthy[kind].latency_ms)
            case SelectionPolicy.QUALITY:
                for kind in self.quality_preference:
                    if kind in healthy:
                        return kind
                raise ProviderUnavailable("No provider in the quality preference order is healthy")
            case _:
                raise ValueError(f"Policy {policy.value} must be resolved before selection")
