"""Deterministic message analysis and context enrichment."""

from __future__ import annotations

import json
import re
from dataclasses import asdict
from typing import Any

from chat_orchestrator.types import (
    Analysis,
    ConversationStage,
    LeadReadiness,
    RequestContext,
    Urgency,
)

_PATTERNS = {
    "greeting": re.compile(r"\b(hello|hi|hey|good (morning|afternoon|evening)|start)\b"),
    "quote": re.compile(r"\b(cost|price|premium|how much|quote|afford)\b"),
    "purchase": re.compile(r"\b(buy|purchase|sign me up|sign up|ready to|proceed)\b"),
    "comparison": re.compile(r"\b(compare|comparison|difference|versus|vs)\b"),
    "claim": re.compile(r"\b(claim|accident|damage)\b"),
    "support": re.compile(r"\b(help|support|problem|issue)\b"),
    "payment": re.compile(r"\b(pay|payment|momo|mobile money|mtn|vodafone|airteltigo|cash)\b"),
    "urgent": re.compile(r"\b(urgent|emergency|asap|immediately|right now)\b"),
    "soon": re.compile(r"\b(soon|quickly|today)\b"),
}

_TOPICS = (
    ("auto", re.compile(r"\b(car|vehicle|auto|motor|toyota|camry|driving)\b")),
    ("health", re.compile(r"\b(health|medical|hospital|nhis|doctor)\b")),
    ("life", re.compile(r"\blife\b")),
    ("business", re.compile(r"\b(business|commercial|company)\b")),
    ("property", re.compile(r"\b(property|home|house|fire)\b")),
    ("travel", re.compile(r"\b(travel|trip|visa)\b")),
)

_GREETING_ONLY_WORDS = 4


class PatternClassifier:
    """Keyword classifier for intent, topic, urgency, and stage.

    Returns `None` when the message carries no recognisable signal, which is
    the cue for the provider-backed classifier.
    """

    def classify(self, message: str) -> Analysis | None:
        text = message.lower()
        hits = {name for name, pattern in _PATTERNS.items() if pattern.search(text)}
        topic = next((name for name, pattern in _TOPICS if pattern.search(text)), None)
        if not hits and topic is None:
            return None

        stage = _stage(hits, text)
        intent = _intent(hits, stage)
        urgency = _urgency(hits, stage, intent)
        readiness = _readiness(stage)
        return Analysis(
            intent=intent,
            topic=topic or "general",
            urgency=urgency,
            stage=stage,
            lead_readiness=readiness,
            confidence=0.9 if intent == "greeting" else 0.8,
            source="pattern",
        )


class ContextEnricher:
    """Fills context fields the caller left empty, using `PatternClassifier`."""

    def __init__(self, classifier: PatternClassifier | None = None) -> None:
        self.classifier = classifier or PatternClassifier()

    def enrich(self, context: RequestContext, message: str) -> Analysis | None:
        analysis = self.classifier.classify(message)
        if context.stage is None:
            context.stage = analysis.stage if analysis else ConversationStage.INFORMATION_GATHERING
        if context.topic is None:
            context.topic = analysis.topic if analysis else "general"
        if context.urgency is None:
            context.urgency = analysis.urgency if analysis else Urgency.LOW
        if context.lead_score is None and analysis is not None:
            context.lead_score = lead_score(analysis)
        return analysis


def lead_score(analysis: Analysis) -> int:
    """Score lead quality on a 0-10 scale."""
    score = 5
    if analysis.lead_readiness is LeadReadiness.HOT:
        score += 3
    elif analysis.lead_readiness is LeadReadiness.WARM:
        score += 2
    if analysis.intent == "quote":
        score += 2
    if analysis.urgency is Urgency.HIGH:
        score += 1
    return min(score, 10)


def analysis_to_dict(analysis: Analysis) -> dict[str, Any]:
    payload = asdict(analysis)
    payload["urgency"] = analysis.urgency.value
    payload["stage"] = analysis.stage.value
    payload["lead_readiness"] = analysis.lead_readiness.value
    return payload


def analysis_from_dict(payload: dict[str, Any]) -> Analysis:
    return Analysis(
        intent=str(payload["intent"]),
        topic=str(payload["topic"]),
        urgency=Urgency(payload["urgency"]),
        stage=ConversationStage(payload["stage"]),
        lead_readiness=LeadReadiness(payload["lead_readiness"]),
        confidence=float(payload["confidence"]),
        source=str(payload.get("source", "cache")),
    )


def parse_provider_analysis(raw: str) -> Analysis:
    """Parse the JSON object returned by the provider-backed classifier.

    Raises:
        ValueError: when the payload is not a JSON object with known values.
    """
    cleaned = re.sub(r"```(json)?", "", raw).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object in provider analysis")
    data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("provider analysis is not an object")

    intent = str(data.get("primaryIntent", "information"))
    urgency = Urgency(str(data.get("urgencyLevel", "low")).lower())
    readiness = LeadReadiness(str(data.get("leadReadiness", "cold")).lower())
    stage = {
        "quote": ConversationStage.QUOTE_REQUEST,
        "purchase": ConversationStage.DECISION,
        "claim": ConversationStage.SUPPORT_NEEDED,
    }.get(intent, ConversationStage.INFORMATION_GATHERING)
    return Analysis(
        intent=intent,
        topic=str(data.get("insuranceType", "general")).lower(),
        urgency=urgency,
        stage=stage,
        lead_readiness=readiness,
        confidence=float(data.get("confidence", 0.6)),
        source="provider",
    )


def _stage(hits: set[str], text: str) -> ConversationStage:
    if "purchase" in hits or "payment" in hits:
        return ConversationStage.DECISION
    if "quote" in hits:
        return ConversationStage.QUOTE_REQUEST
    if "comparison" in hits:
        return ConversationStage.COMPARISON
    if "claim" in hits or "support" in hits:
        return ConversationStage.SUPPORT_NEEDED
    if "greeting" in hits and len(text.split()) <= _GREETING_ONLY_WORDS:
        return ConversationStage.GREETING
    return ConversationStage.INFORMATION_GATHERING


def _intent(hits: set[str], stage: ConversationStage) -> str:
    if "quote" in hits:
        return "quote"
    if "claim" in hits:
        return "claim"
    if "purchase" in hits:
        return "purchase"
    if "payment" in hits:
        return "payment"
    if stage is ConversationStage.GREETING:
        return "greeting"
    return "information"


def _urgency(hits: set[str], stage: ConversationStage, intent: str) -> Urgency:
    if "urgent" in hits or intent == "claim":
        return Urgency.HIGH
    if "soon" in hits or intent == "quote" or stage is ConversationStage.DECISION:
        return Urgency.MEDIUM
    return Urgency.LOW


def _readiness(stage: ConversationStage) -> LeadReadiness:
    if stage is ConversationStage.DECISION:
        return LeadReadiness.HOT
    if stage in (ConversationStage.QUOTE_REQUEST, ConversationStage.COMPARISON):
        return LeadReadiness.WARM
    return LeadReadiness.COLD
