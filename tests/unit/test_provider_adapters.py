import asyncio
import json

import httpx
import pytest

from chat_orchestrator.config import HealthThresholds, ProviderConfig
from chat_orchestrator.errors import CapabilityNotSupported, ProviderRequestError, ProviderTimeout
from chat_orchestrator.providers.claude import ClaudeAdapter
from chat_orchestrator.providers.local_llama import LocalLlamaAdapter
from chat_orchestrator.providers.openai_compat import DeepSeekAdapter, OpenAIAdapter
from chat_orchestrator.providers.registry import create_adapter
from chat_orchestrator.types import ChatMessage, HealthStatus, ProviderKind

MESSAGES = [
    ChatMessage(role="system", content="You are a helpful Ghana insurance agent."),
    ChatMessage(role="user", content="What is comprehensive cover?"),
]


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_openai_completion_request_and_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-3.5-turbo",
                "choices": [{"message": {"content": "It covers your car."}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 5},
            },
        )

    adapter = OpenAIAdapter(
        ProviderConfig(kind=ProviderKind.OPENAI, model="gpt-3.5-turbo", api_key="sk-test"),
        client=_client(handler),
    )
    completion = await adapter.complete(MESSAGES, max_tokens=50)

    assert completion.text == "It covers your car."
    assert completion.prompt_tokens == 12
    assert completion.completion_tokens == 5
    request = seen[0]
    assert request.url.path.endswith("/chat/completions")
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["max_tokens"] == 50
    assert body["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_claude_sends_system_prompt_separately() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-haiku-20240307",
                "content": [{"type": "text", "text": "Comprehensive cover protects both parties."}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 20, "output_tokens": 8},
            },
        )

    adapter = ClaudeAdapter(
        ProviderConfig(kind=ProviderKind.CLAUDE, model="claude-3-haiku-20240307", api_key="key"),
        client=_client(handler),
    )
    completion = await adapter.complete(MESSAGES)

    assert completion.text.startswith("Comprehensive")
    request = seen[0]
    assert request.url.path.endswith("/messages")
    assert request.headers["x-api-key"] == "key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == MESSAGES[0].content
    assert [message["role"] for message in body["messages"]] == ["user"]


@pytest.mark.asyncio
async def test_claude_rejects_embeddings() -> None:
    adapter = ClaudeAdapter(
        ProviderConfig(kind=ProviderKind.CLAUDE, model="claude-3-haiku-20240307", api_key="key"),
        client=_client(lambda request: httpx.Response(500)),
    )
    with pytest.raises(CapabilityNotSupported):
        await adapter.embed("text")


@pytest.mark.asyncio
async def test_local_probe_and_generation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama2:latest"}]})
        if request.url.path == "/api/generate":
            body = json.loads(request.content)
            assert "Human: What is comprehensive cover?" in body["prompt"]
            return httpx.Response(200, json={"response": "Local answer.", "done": True})
        if request.url.path == "/api/embeddings":
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})
        return httpx.Response(404)

    adapter = LocalLlamaAdapter(
        ProviderConfig(kind=ProviderKind.LOCAL_LLAMA, model="llama2", base_url="http://llm.local:11434"),
        client=_client(handler),
    )
    snapshot = await adapter.health()
    completion = await adapter.complete(MESSAGES)

    assert snapshot.status is HealthStatus.HEALTHY
    assert completion.text == "Local answer."
    assert await adapter.embed("hello") == [0.1, 0.2]
    assert adapter.estimate_cost(1000, 1000) == 0.0


@pytest.mark.asyncio
async def test_slow_backend_raises_provider_timeout_and_counts_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={})

    adapter = DeepSeekAdapter(
        ProviderConfig(kind=ProviderKind.DEEPSEEK, model="deepseek-chat", api_key="k"),
        client=_client(handler),
    )
    with pytest.raises(ProviderTimeout):
        await adapter.complete(MESSAGES, timeout=0.05)
    assert adapter.error_rate == 1.0


@pytest.mark.asyncio
async def test_http_and_payload_errors_become_request_errors() -> None:
    adapter = OpenAIAdapter(
        ProviderConfig(kind=ProviderKind.OPENAI, model="gpt-3.5-turbo", api_key="k"),
        client=_client(lambda request: httpx.Response(503)),
    )
    with pytest.raises(ProviderRequestError):
        await adapter.complete(MESSAGES)

    malformed = OpenAIAdapter(
        ProviderConfig(kind=ProviderKind.OPENAI, model="gpt-3.5-turbo", api_key="k"),
        client=_client(lambda request: httpx.Response(200, json={"choices": []})),
    )
    with pytest.raises(ProviderRequestError):
        await malformed.complete(MESSAGES)


@pytest.mark.asyncio
async def test_failed_probe_yields_unhealthy_snapshot() -> None:
    adapter = OpenAIAdapter(
        ProviderConfig(kind=ProviderKind.OPENAI, model="gpt-3.5-turbo", api_key="k"),
        client=_client(lambda request: httpx.Response(401)),
    )
    snapshot = await adapter.health()

    assert snapshot.status is HealthStatus.UNHEALTHY
    assert snapshot.error is not None


@pytest.mark.asyncio
async def test_error_rate_feeds_health_classification() -> None:
    completions = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["max_tokens"] == 1:
            return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})
        completions["n"] += 1
        if completions["n"] == 3:
            return httpx.Response(500)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    adapter = OpenAIAdapter(
        ProviderConfig(
            kind=ProviderKind.OPENAI,
            model="gpt-3.5-turbo",
            api_key="k",
            thresholds=HealthThresholds(degraded_error_rate=0.1, unhealthy_error_rate=0.5),
        ),
        client=_client(handler),
    )
    await adapter.complete(MESSAGES)
    await adapter.complete(MESSAGES)
    with pytest.raises(ProviderRequestError):
        await adapter.complete(MESSAGES)

    snapshot = await adapter.health()
    assert adapter.error_rate == pytest.approx(1 / 3)
    assert snapshot.status is HealthStatus.DEGRADED



def test_cost_formulas_differ_per_backend() -> None:
    openai = create_adapter(ProviderConfig(kind=ProviderKind.OPENAI, model="gpt-3.5-turbo", api_key="k"))
    claude = create_adapter(
        ProviderConfig(kind=ProviderKind.CLAUDE, model="claude-3-haiku-20240307", api_key="k")
    )
    cpt_openai = openai.capabilities().cost_per_token
    cpt_claude = claude.capabilities().cost_per_token

    assert openai.estimate_cost(100, 50) == pytest.approx(150 * cpt_openai)
    assert claude.estimate_cost(100, 50) == pytest.approx(100 * cpt_claude + 50 * cpt_claude * 3)


def test_adapter_rejects_mismatched_kind() -> None:
    with pytest.raises(ValueError):
        OpenAIAdapter(ProviderConfig(kind=ProviderKind.CLAUDE, model="x"))
