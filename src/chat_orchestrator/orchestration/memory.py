"""Bounded per-conversation history and customer profiles."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, defaultdict, deque
from datetime import datetime, timezone

from chat_orchestrator.types import Analysis, ConversationTurn, CustomerProfile, LeadReadiness

_ConversationKey = tuple[str, str]

_READINESS_RANK = {LeadReadiness.COLD: 0, LeadReadiness.WARM: 1, LeadReadiness.HOT: 2}


class ConversationMemory:
    """Keeps the last `max_turns` turns and a profile per (tenant, user).

    Concurrent requests for the same conversation serialise their updates on
    a per-key lock; no ordering between those requests is implied. At most
    `max_conversations` conversations are held; beyond that the one updated
    least recently is forgotten along with its profile.
    """

    def __init__(self, *, max_turns: int = 5, max_conversations: int = 10_000) -> None:
        self.max_turns = max_turns
        self.max_conversations = max_conversations
        self.evicted = 0
        self._turns: OrderedDict[_ConversationKey, deque[ConversationTurn]] = OrderedDict()
        self._profiles: dict[_ConversationKey, CustomerProfile] = {}
        self._locks: defaultdict[_ConversationKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def profile_count(self) -> int:
        return len(self._profiles)

    async def record(
        self,
        tenant_id: str,
        user_id: str,
        *,
        message: str,
        reply: str,
        analysis: Analysis,
    ) -> CustomerProfile:
        key = (tenant_id, user_id)
        async with self._locks[key]:
            turns = self._turns.setdefault(key, deque(maxlen=self.max_turns))
            self._turns.move_to_end(key)
            turns.append(
                ConversationTurn(
                    message=message,
                    reply=reply,
                    intent=analysis.intent,
                    topic=analysis.topic,
                    timestamp_utc=datetime.now(timezone.utc).isoformat(),
                )
            )
            profile = self._profiles.setdefault(
                key, CustomerProfile(tenant_id=tenant_id, user_id=user_id)
            )
            if analysis.topic != "general" and analysis.topic not in profile.interests:
                profile.interests.append(analysis.topic)
            if _READINESS_RANK[analysis.lead_readiness] > _READINESS_RANK[profile.readiness]:
                profile.readiness = analysis.lead_readiness
            profile.interactions += 1
            self._evict_idle()
            return profile

    def history(self, tenant_id: str, user_id: str) -> list[ConversationTurn]:
        return list(self._turns.get((tenant_id, user_id), ()))

    def profile(self, tenant_id: str, user_id: str) -> CustomerProfile | None:
        return self._profiles.get((tenant_id, user_id))

    def _evict_idle(self) -> None:
        while len(self._turns) > self.max_conversations:
            key = next((key for key in self._turns if not self._locks[key].locked()), None)
            if key is None:
                return
            del self._turns[key]
            self._profiles.pop(key, None)
            del self._locks[key]
            self.evicted += 1
