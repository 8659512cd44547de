import asyncio

import pytest

from chat_orchestrator.orchestration.analysis import PatternClassifier
from chat_orchestrator.orchestration.memory import ConversationMemory
from chat_orchestrator.types import LeadReadiness


@pytest.mark.asyncio
async def test_history_keeps_only_last_turns() -> None:
    memory = ConversationMemory(max_turns=3)
    analysis = PatternClassifier().classify("car insurance")
    assert analysis is not None

    for index in range(5):
        await memory.record("acme", "u1", message=f"car question {index}", reply="answer", analysis=analysis)

    history = memory.history("acme", "u1")
    assert [turn.message for turn in history] == ["car question 2", "car question 3", "car question 4"]
    assert memory.history("acme", "someone-else") == []


@pytest.mark.asyncio
async def test_profile_tracks_interests_and_highest_readiness() -> None:
    memory = ConversationMemory()
    classifier = PatternClassifier()
    hot = classifier.classify("I want to buy car insurance")
    cold = classifier.classify("tell me about health insurance")
    assert hot is not None and cold is not None

    await memory.record("acme", "u1", message="buy", reply="ok", analysis=hot)
    profile = await memory.record("acme", "u1", message="health", reply="ok", analysis=cold)

    assert profile.interests == ["auto", "health"]
    assert profile.readiness is LeadReadiness.HOT
    assert profile.interactions == 2
    assert memory.profile("acme", "u1") is profile
    assert memory.profile_count == 1


@pytest.mark.asyncio
async def test_concurrent_updates_to_one_conversation_are_all_counted() -> None:
    memory = ConversationMemory(max_turns=50)
    analysis = PatternClassifier().classify("car insurance")
    assert analysis is not None

    await asyncio.gather(
        *(
            memory.record("acme", "u1", message=f"m{index}", reply="r", analysis=analysis)
            for index in range(20)
        )
    )

    profile = memory.profile("acme", "u1")
    assert profile is not None
    assert profile.interactions == 20
    assert len(memory.history("acme", "u1")) == 20


@pytest.mark.asyncio
async def test_least_recently_updated_conversation_is_forgotten_beyond_capacity() -> None:
    memory = ConversationMemory(max_conversations=2)
    analysis = PatternClassifier().classify("car insurance")
    assert analysis is not None

    await memory.record("acme", "u1", message="first", reply="r", analysis=analysis)
    await memory.record("acme", "u2", message="second", reply="r", analysis=analysis)
    await memory.record("acme", "u1", message="again", reply="r", analysis=analysis)
    await memory.record("acme", "u3", message="third", reply="r", analysis=analysis)

    assert len(memory) == 2
    assert memory.profile_count == 2
    assert memory.evicted == 1
    assert memory.history("acme", "u2") == []
    assert memory.profile("acme", "u2") is None
    assert [turn.message for turn in memory.history("acme", "u1")] == ["first", "again"]
