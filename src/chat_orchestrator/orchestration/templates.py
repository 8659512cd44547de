"""Canned replies for common message shapes and the fixed fallback reply."""

from __future__ import annotations

import re
from dataclasses import dataclass

from chat_orchestrator.types import Analysis, ConversationStage

FALLBACK_MESSAGE = (
    "I understand you need help with insurance. I can assist you with auto, health, "
    "life, or business insurance in Ghana. What specific information would you like to know?"
)
FALLBACK_CONFIDENCE = 0.3
FALLBACK_LEAD_SCORE = 3

_PAYMENT_PATTERN = re.compile(r"\b(momo|mobile money|pay|payment)\b", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class TemplateReply:
    name: str
    message: str
    confidence: float
    should_capture_lead: bool
    lead_score: int
    stage: ConversationStage


GREETING = TemplateReply(
    name="greeting",
    message=(
        "Hello! Welcome. I can help you find the right insurance cover in Ghana, "
        "whether auto, health, life, or business. What would you like to know?"
    ),
    confidence=0.9,
    should_capture_lead=False,
    lead_score=5,
    stage=ConversationStage.GREETING,
)

MOBILE_MONEY = TemplateReply(
    name="mobile_money",
    message=(
        "You can pay your premium with MTN Mobile Money, Vodafone Cash, or AirtelTigo Money. "
        "Monthly and annual plans are available. Shall I prepare a quote so you can pay today?"
    ),
    confidence=0.95,
    should_capture_lead=True,
    lead_score=8,
    stage=ConversationStage.DECISION,
)

AUTO_INFORMATION = TemplateReply(
    name="auto_information",
    message=(
        "Auto insurance in Ghana starts with third-party cover, which the law requires, "
        "and goes up to comprehensive cover that also protects your own vehicle. "
        "Tell me your car's make, model, and year and I can give you an estimate."
    ),
    confidence=0.9,
    should_capture_lead=True,
    lead_score=7,
    stage=ConversationStage.INFORMATION_GATHERING,
)


class TemplateResponder:
    """Matches an analysed message to a canned reply, if one fits."""

    def match(self, message: str, analysis: Analysis) -> TemplateReply | None:
        if analysis.intent == "greeting" and analysis.stage is ConversationStage.GREETING:
            return GREETING
        if _PAYMENT_PATTERN.search(message):
            return MOBILE_MONEY
        if analysis.topic == "auto" and analysis.intent == "information":
            return AUTO_INFORMATION
        return None
