import asyncio
import json

import httpx
import pytest

from chat_orchestrator.cache.coordinator import CacheCoordinator
from chat_orchestrator.cache.redis_store import RedisCacheStore
from chat_orchestrator.cache.store import InMemoryCacheStore
from chat_orchestrator.config import CacheConfig, OrchestratorConfig
from chat_orchestrator.orchestration.orchestrator import RequestState
from chat_orchestrator.orchestration.templates import FALLBACK_MESSAGE
from chat_orchestrator.orchestration.tenants import InMemoryTenantConfigSource, TenantConfig
from chat_orchestrator.types import (
    ConversationStage,
    KnowledgeDocument,
    ProviderKind,
    RequestContext,
    SelectionPolicy,
)

HEALTH_QUESTION = "what does health insurance cover for my family"


@pytest.mark.asyncio
async def test_greeting_is_answered_from_template_without_generation(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI)
    orchestrator = build_orchestrator([provider])

    response = await orchestrator.process_message("Hello", tenant_id="acme", user_id="u1")

    assert response.provider_used == "template"
    assert response.confidence >= 0.8
    assert response.conversation_stage == "greeting"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_decision_stage_calculation_uses_quality_provider(fake_provider, build_orchestrator) -> None:
    openai = fake_provider(ProviderKind.OPENAI, cost_per_token=0.00001)
    claude = fake_provider(ProviderKind.CLAUDE, cost_per_token=0.00003)
    deepseek = fake_provider(ProviderKind.DEEPSEEK, cost_per_token=0.000001)
    orchestrator = build_orchestrator([openai, claude, deepseek])
    context = RequestContext(tenant_id="acme", user_id="u1", stage=ConversationStage.DECISION)

    response = await orchestrator.process_message(
        "calculate premium for comprehensive coverage",
        tenant_id="acme",
        user_id="u1",
        context=context,
    )

    assert response.provider_used == "claude"
    assert response.conversation_stage == "decision"
    assert response.estimated_cost > 0
    assert len(claude.calls) == 1
    assert openai.calls == [] and deepseek.calls == []
    assert orchestrator.trace_store.list_recent(1)[0].policy == SelectionPolicy.QUALITY.value


@pytest.mark.asyncio
async def test_generation_walks_every_pipeline_state(fake_provider, build_orchestrator) -> None:
    orchestrator = build_orchestrator([fake_provider(ProviderKind.OPENAI)])
    states: list[RequestState] = []
    orchestrator.set_observer(lambda request_id, state: states.append(state))

    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert response.provider_used == "openai"
    assert states == [
        RequestState.ADMITTED,
        RequestState.CACHE_CHECK,
        RequestState.PROVIDER_SELECTED,
        RequestState.ANALYZED,
        RequestState.RETRIEVED,
        RequestState.GENERATED,
        RequestState.CACHED,
        RequestState.RETURNED,
    ]


@pytest.mark.asyncio
async def test_repeated_message_is_served_from_cache(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI)
    orchestrator = build_orchestrator([provider])

    first = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")
    second = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert first.cached is False
    assert second.cached is True
    assert second.message == first.message
    assert len(provider.calls) == 1
    assert orchestrator.trace_store.summary()["cache_hit_rate"] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_generation_timeout_degrades_to_fallback(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI, complete_delay=1.0)
    orchestrator = build_orchestrator(
        [provider],
        config=OrchestratorConfig(health_cache_seconds=0.0, generation_timeout_seconds=0.05),
    )

    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")
    again = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert response.provider_used == "fallback"
    assert response.message == FALLBACK_MESSAGE
    assert response.confidence < 0.5
    assert again.cached is False
    assert orchestrator.trace_store.summary()["fallback_count"] == 2
    assert orchestrator.in_flight == 0


@pytest.mark.asyncio
async def test_transport_failure_degrades_to_fallback(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI, complete_error=httpx.ConnectError("reset by peer"))
    orchestrator = build_orchestrator([provider])

    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert response.provider_used == "fallback"


@pytest.mark.asyncio
async def test_no_healthy_provider_still_serves_templates(fake_provider, build_orchestrator) -> None:
    orchestrator = build_orchestrator([fake_provider(ProviderKind.OPENAI, probe_fails=True)])

    greeting = await orchestrator.process_message("Hello", tenant_id="acme", user_id="u1")
    question = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert greeting.provider_used == "template"
    assert question.provider_used == "fallback"


@pytest.mark.asyncio
async def test_admission_blocks_requests_beyond_the_limit(fake_provider, build_orchestrator) -> None:
    gate = asyncio.Event()
    provider = fake_provider(ProviderKind.OPENAI, gate=gate)
    orchestrator = build_orchestrator(
        [provider],
        config=OrchestratorConfig(health_cache_seconds=0.0, max_concurrent_requests=2),
    )

    tasks = [
        asyncio.create_task(
            orchestrator.process_message(f"{HEALTH_QUESTION} number {index}", tenant_id="acme", user_id=f"u{index}")
        )
        for index in range(3)
    ]
    for _ in range(200):
        if provider.active == 2 and orchestrator.waiting == 1:
            break
        await asyncio.sleep(0.01)

    assert provider.active == 2
    assert orchestrator.in_flight == 2
    assert orchestrator.waiting == 1

    gate.set()
    responses = await asyncio.gather(*tasks)

    assert [response.provider_used for response in responses] == ["openai"] * 3
    assert provider.peak_active == 2
    assert orchestrator.in_flight == 0
    assert orchestrator.waiting == 0


@pytest.mark.asyncio
async def test_tenant_preferences_shape_selection_and_reply(fake_provider, build_orchestrator) -> None:
    openai = fake_provider(ProviderKind.OPENAI, cost_per_token=0.000001)
    deepseek = fake_provider(ProviderKind.DEEPSEEK, cost_per_token=0.00003)
    tenants = InMemoryTenantConfigSource(
        [
            TenantConfig(
                tenant_id="acme",
                preferred_provider=ProviderKind.DEEPSEEK,
                branding_tone="warm and friendly",
                contact_info="Call Acme Insurance on 0302 000 000.",
            )
        ]
    )
    orchestrator = build_orchestrator([openai, deepseek], tenants=tenants)

    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert response.provider_used == "deepseek"
    assert response.message.endswith("Call Acme Insurance on 0302 000 000.")
    system_prompt = deepseek.calls[0][0]
    assert system_prompt.role == "system"
    assert "warm and friendly" in system_prompt.content


@pytest.mark.asyncio
async def test_knowledge_is_retrieved_into_prompt_and_updates_invalidate_replies(
    fake_provider, build_orchestrator
) -> None:
    provider = fake_provider(ProviderKind.OPENAI)
    orchestrator = build_orchestrator([provider])

    await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")
    written = await orchestrator.update_knowledge_base(
        [
            KnowledgeDocument(
                doc_id="acme-health",
                content="Acme family health insurance covers outpatient care and maternity in Ghana.",
                metadata={"tenant_id": "acme"},
            )
        ]
    )
    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert written == 1
    assert response.cached is False
    assert len(provider.calls) == 2
    user_prompt = provider.calls[1][-1].content
    assert "Acme family health insurance" in user_prompt
    assert 0.1 <= response.confidence <= 0.95


@pytest.mark.asyncio
async def test_unrecognised_message_uses_provider_classification(fake_provider, build_orchestrator) -> None:
    reply = json.dumps(
        {
            "primaryIntent": "quote",
            "insuranceType": "auto",
            "urgencyLevel": "medium",
            "leadReadiness": "warm",
            "confidence": 0.7,
        }
    )
    provider = fake_provider(ProviderKind.OPENAI, reply=reply)
    orchestrator = build_orchestrator([provider])

    response = await orchestrator.process_message("What would you suggest for me", tenant_id="acme", user_id="u1")

    assert response.provider_used == "openai"
    assert response.conversation_stage == "quote_request"
    assert response.should_capture_lead is True
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_inconclusive_classification_degrades_to_fallback(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI, reply="I am not sure.")
    orchestrator = build_orchestrator([provider])

    response = await orchestrator.process_message("What would you suggest for me", tenant_id="acme", user_id="u1")

    assert response.provider_used == "fallback"


@pytest.mark.asyncio
async def test_history_profile_and_analytics_are_updated(fake_provider, build_orchestrator) -> None:
    orchestrator = build_orchestrator([fake_provider(ProviderKind.OPENAI)])

    await orchestrator.process_message("I want to buy car insurance", tenant_id="acme", user_id="u1")
    await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    history = orchestrator.history("acme", "u1")
    profile = orchestrator.profile("acme", "u1")
    analytics = await orchestrator.performance_analytics()

    assert [turn.topic for turn in history] == ["auto", "health"]
    assert profile is not None
    assert profile.interactions == 2
    assert analytics["active_conversations"] == 1
    assert analytics["concurrency"]["in_flight"] == 0
    assert analytics["providers"]["current"] == "openai"


@pytest.mark.asyncio
async def test_provider_management_operations(fake_provider, build_orchestrator) -> None:
    orchestrator = build_orchestrator(
        [fake_provider(ProviderKind.OPENAI), fake_provider(ProviderKind.LOCAL_LLAMA, cost_per_token=0.0)]
    )

    assert orchestrator.current_provider().kind is ProviderKind.OPENAI
    assert orchestrator.switch_provider("local_llama").kind is ProviderKind.LOCAL_LLAMA
    assert orchestrator.current_provider().kind is ProviderKind.LOCAL_LLAMA
    assert {item.kind for item in orchestrator.available_providers()} == {
        ProviderKind.OPENAI,
        ProviderKind.LOCAL_LLAMA,
    }
    assert orchestrator.cost_estimates(100)[ProviderKind.LOCAL_LLAMA] == 0.0
    health = await orchestrator.provider_health(refresh=True)
    assert all(snapshot.is_healthy for snapshot in health.values())


@pytest.mark.asyncio
async def test_slow_provider_classification_is_abandoned_at_its_bound(fake_provider, build_orchestrator) -> None:
    provider = fake_provider(ProviderKind.OPENAI, complete_delay=1.0)
    orchestrator = build_orchestrator(
        [provider],
        config=OrchestratorConfig(health_cache_seconds=0.0, analysis_timeout_seconds=0.1),
    )

    response = await orchestrator.process_message("What would you suggest for me", tenant_id="acme", user_id="u1")

    assert response.provider_used == "fallback"
    assert 100.0 <= response.elapsed_ms < 900.0
    assert len(provider.calls) == 1
    assert provider.active == 0
    assert orchestrator.in_flight == 0
    assert orchestrator.trace_store.list_recent(1)[0].fallback_reason is not None


@pytest.mark.asyncio
async def test_hanging_redis_tier_does_not_stall_requests(fake_provider, fake_redis, build_orchestrator) -> None:
    config = CacheConfig(operation_timeout_seconds=0.05)
    cache = CacheCoordinator(
        RedisCacheStore(fake_redis(hang=True), config),
        InMemoryCacheStore(config),
        config=config,
    )
    orchestrator = build_orchestrator([fake_provider(ProviderKind.OPENAI)], cache=cache)

    first = await asyncio.wait_for(
        orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1"), 3.0
    )
    second = await asyncio.wait_for(
        orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1"), 3.0
    )
    await cache.drain()

    assert first.provider_used == "openai"
    assert second.cached is True
    assert orchestrator.in_flight == 0
    assert "timed out" in (cache.metrics.last_error or "")


@pytest.mark.asyncio
async def test_corrupt_redis_entry_does_not_force_fallback(fake_provider, fake_redis, build_orchestrator) -> None:
    client = fake_redis()
    cache = CacheCoordinator(RedisCacheStore(client), InMemoryCacheStore())
    orchestrator = build_orchestrator([fake_provider(ProviderKind.OPENAI)], cache=cache)
    await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")
    for key in [key for key in client.data if ":response:" in key]:
        client.data[key] = "{not json"

    response = await orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1")

    assert response.provider_used == "openai"
    assert response.cached is True


@pytest.mark.asyncio
async def test_cancelled_waiter_releases_its_place_in_the_queue(fake_provider, build_orchestrator) -> None:
    gate = asyncio.Event()
    provider = fake_provider(ProviderKind.OPENAI, gate=gate)
    orchestrator = build_orchestrator(
        [provider],
        config=OrchestratorConfig(health_cache_seconds=0.0, max_concurrent_requests=1),
    )
    running = asyncio.create_task(orchestrator.process_message(HEALTH_QUESTION, tenant_id="acme", user_id="u1"))
    queued = asyncio.create_task(
        orchestrator.process_message(f"{HEALTH_QUESTION} again", tenant_id="acme", user_id="u2")
    )
    for _ in range(200):
        if provider.active == 1 and orchestrator.waiting == 1:
            break
        await asyncio.sleep(0.01)

    queued.cancel()
    with pytest.raises(asyncio.CancelledError):
        await queued
    assert orchestrator.waiting == 0

    gate.set()
    response = await running

    assert response.provider_used == "openai"
    assert orchestrator.in_flight == 0
    follow_up = await orchestrator.process_message("Hello", tenant_id="acme", user_id="u3")
    assert follow_up.provider_used == "template"
