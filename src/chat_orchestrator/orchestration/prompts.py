"""Prompt construction for generation and provider-backed analysis."""

from __future__ import annotations

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from chat_orchestrator.types import ChatMessage, ConversationTurn, Passage

SYSTEM_PROMPT = """
You are a helpful Ghana insurance agent. Be concise and professional.

Rules:
1) Answer from the knowledge snippets provided with the customer's message.
2) If the snippets do not cover the question, say so and offer to connect the customer with an agent.
3) Never invent prices, policy terms, or regulations.
""".strip()

MAX_KNOWLEDGE_CHARS = 800

_GENERATION_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", "{system_prompt}"),
        MessagesPlaceholder(variable_name="chat_history", optional=True),
        ("human", 'Customer: "{message}"\nKnowledge: {knowledge}\nResponse (max 150 words):'),
    ]
)

_ANALYSIS_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", "You classify insurance customer messages. Reply with JSON only."),
        (
            "human",
            'Analyze: "{message}"\n'
            'Return JSON: {{"primaryIntent": "quote|claim|purchase|payment|information", '
            '"insuranceType": "auto|health|life|business|property|travel|general", '
            '"urgencyLevel": "low|medium|high", "leadReadiness": "cold|warm|hot", '
            '"confidence": 0.0}}',
        ),
    ]
)

_ROLES = {"system": "system", "human": "user", "ai": "assistant"}


def build_generation_messages(
    message: str,
    passages: list[Passage],
    *,
    history: list[ConversationTurn] | None = None,
    branding_tone: str | None = None,
) -> list[ChatMessage]:
    system_prompt = SYSTEM_PROMPT
    if branding_tone:
        system_prompt = f"{system_prompt}\nTone: {branding_tone}"
    knowledge = "\n".join(passage.content for passage in passages)[:MAX_KNOWLEDGE_CHARS]
    prompt_messages = _GENERATION_PROMPT.format_messages(
        system_prompt=system_prompt,
        chat_history=_history_messages(history or []),
        message=message,
        knowledge=knowledge or "none available",
    )
    return to_chat_messages(prompt_messages)


def build_analysis_messages(message: str) -> list[ChatMessage]:
    return to_chat_messages(_ANALYSIS_PROMPT.format_messages(message=message))


def to_chat_messages(messages: list[BaseMessage]) -> list[ChatMessage]:
    """Convert LangChain messages into provider-neutral role/content pairs."""
    return [
        ChatMessage(role=_ROLES.get(item.type, "user"), content=str(item.content))
        for item in messages
    ]


def _history_messages(turns: list[ConversationTurn]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for turn in turns:
        messages.append(HumanMessage(content=turn.message))
        messages.append(AIMessage(content=turn.reply))
    return messages
