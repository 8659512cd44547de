"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ProviderKind(str, Enum):
    """Closed set of generation backends."""

    OPENAI = "openai"
    CLAUDE = "claude"
    LOCAL_LLAMA = "local_llama"
    DEEPSEEK = "deepseek"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SelectionPolicy(str, Enum):
    COST = "cost"
    SPEED = "speed"
    QUALITY = "quality"
    AUTO = "auto"


class ConversationStage(str, Enum):
    GREETING = "greeting"
    INFORMATION_GATHERING = "information_gathering"
    QUOTE_REQUEST = "quote_request"
    COMPARISON = "comparison"
    DECISION = "decision"
    SUPPORT_NEEDED = "support_needed"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LeadReadiness(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


@dataclass(slots=True)
class Capabilities:
    """Static capability and pricing profile of a provider's model."""

    supports_embeddings: bool
    supports_streaming: bool
    max_context_length: int
    cost_per_token: float
    average_latency_ms: float


@dataclass(slots=True)
class ProviderDescriptor:
    kind: ProviderKind
    model: str
    capabilities: Capabilities
    initialized: bool = False


@dataclass(slots=True)
class HealthSnapshot:
    """Point-in-time classification of one provider."""

    provider: ProviderKind
    status: HealthStatus
    latency_ms: float
    error_rate: float
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(slots=True)
class Completion:
    """Result of a provider completion call."""

    text: str
    prompt_tokens: int
    completion_tokens: int
    finish_reason: str
    model: str


@dataclass(slots=True)
class CacheEntry:
    value: Any
    created_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass(slots=True)
class RequestContext:
    """Per-request context, enriched stage by stage within one request."""

    tenant_id: str
    user_id: str
    platform: str = "api"
    stage: ConversationStage | None = None
    topic: str | None = None
    urgency: Urgency | None = None
    lead_score: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Analysis:
    """Classifier output for one inbound message."""

    intent: str
    topic: str
    urgency: Urgency
    stage: ConversationStage
    lead_readiness: LeadReadiness
    confidence: float
    source: str = "pattern"


@dataclass(slots=True)
class Passage:
    """One retrieved knowledge snippet."""

    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class KnowledgeDocument:
    """A corpus entry before embedding."""

    doc_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AIResponse:
    """Structured reply returned to the caller."""

    message: str
    confidence: float
    should_capture_lead: bool
    lead_score: int
    provider_used: str
    estimated_cost: float
    elapsed_ms: float
    conversation_stage: str
    cached: bool = False


@dataclass(slots=True)
class ConversationTurn:
    message: str
    reply: str
    intent: str
    topic: str
    timestamp_utc: str


@dataclass(slots=True)
class CustomerProfile:
    """Lightweight per-user profile derived from analyses."""

    tenant_id: str
    user_id: str
    location: str = "ghana"
    interests: list[str] = field(default_factory=list)
    readiness: LeadReadiness = LeadReadiness.COLD
    interactions: int = 0
