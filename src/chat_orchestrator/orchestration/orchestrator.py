"""Request orchestration: admission, caching, selection, analysis, generation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any

from chat_orchestrator.cache.coordinator import CacheCoordinator
from chat_orchestrator.cache.keys import CacheEntryType
from chat_orchestrator.config import OrchestratorConfig
from chat_orchestrator.errors import (
    AnalysisInconclusive,
    ProviderRequestError,
    ProviderTimeout,
    ProviderUnavailable,
)
from chat_orchestrator.obs.tracing import Timer, TraceStore, estimate_token_count
from chat_orchestrator.orchestration.analysis import (
    ContextEnricher,
    PatternClassifier,
    analysis_from_dict,
    analysis_to_dict,
    lead_score,
    parse_provider_analysis,
)
from chat_orchestrator.orchestration.memory import ConversationMemory
from chat_orchestrator.orchestration.prompts import (
    SYSTEM_PROMPT,
    build_analysis_messages,
    build_generation_messages,
)
from chat_orchestrator.orchestration.templates import (
    FALLBACK_CONFIDENCE,
    FALLBACK_LEAD_SCORE,
    FALLBACK_MESSAGE,
    TemplateReply,
    TemplateResponder,
)
from chat_orchestrator.orchestration.tenants import TenantConfig, TenantConfigSource
from chat_orchestrator.providers.base import ProviderAdapter
from chat_orchestrator.providers.registry import ProviderRegistry
from chat_orchestrator.providers.selector import ProviderSelector, Selection
from chat_orchestrator.retrieval.retriever import KnowledgeRetriever
from chat_orchestrator.types import (
    AIResponse,
    Analysis,
    ConversationStage,
    ConversationTurn,
    CustomerProfile,
    HealthSnapshot,
    KnowledgeDocument,
    LeadReadiness,
    Passage,
    ProviderDescriptor,
    ProviderKind,
    RequestContext,
    SelectionPolicy,
)

logger = logging.getLogger(__name__)

_FALLBACK_ERRORS = (ProviderUnavailable, ProviderTimeout, ProviderRequestError, AnalysisInconclusive)
_LOG_PREVIEW_CHARS = 50


class RequestState(str, Enum):
    ADMITTED = "admitted"
    CACHE_CHECK = "cache_check"
    PROVIDER_SELECTED = "provider_selected"
    ANALYZED = "analyzed"
    RETRIEVED = "retrieved"
    GENERATED = "generated"
    CACHED = "cached"
    RETURNED = "returned"
    ERRORED = "errored"
    FALLBACK = "fallback"


StateObserver = Callable[[str, RequestState], None]


@dataclass(slots=True)
class _RequestRun:
    request_id: str
    context: RequestContext
    state: RequestState = RequestState.ADMITTED
    policy: SelectionPolicy | None = None
    cache_hit: bool = False
    fallback_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0


class RequestOrchestrator:
    """Turns one inbound message into a structured reply.

    At most `max_concurrent_requests` requests run the pipeline at once;
    later callers wait on the admission semaphore. Every failure path ends in
    the fixed fallback reply, so `process_message` never raises an
    `OrchestratorError` to its caller.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        selector: ProviderSelector,
        retriever: KnowledgeRetriever,
        cache: CacheCoordinator,
        trace_store: TraceStore,
        memory: ConversationMemory | None = None,
        tenants: TenantConfigSource | None = None,
        classifier: PatternClassifier | None = None,
        templates: TemplateResponder | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self.registry = registry
        self.selector = selector
        self.retriever = retriever
        self.cache = cache
        self.trace_store = trace_store
        self.config = config or OrchestratorConfig()
        self.memory = memory or ConversationMemory(
            max_turns=self.config.history_turns,
            max_conversations=self.config.max_conversations,
        )
        self.tenants = tenants
        self.enricher = ContextEnricher(classifier)
        self.templates = templates or TemplateResponder()

        self._admission = asyncio.Semaphore(self.config.max_concurrent_requests)
        self._in_flight = 0
        self._waiting = 0
        self._observer: StateObserver | None = None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return self._waiting

    def set_observer(self, observer: StateObserver | None) -> None:
        """Set an optional callback invoked on every request state transition."""
        self._observer = observer

    async def process_message(
        self,
        message: str,
        *,
        tenant_id: str,
        user_id: str,
        context: RequestContext | None = None,
    ) -> AIResponse:
        context = context or RequestContext(tenant_id=tenant_id, user_id=user_id)
        run = _RequestRun(request_id=uuid.uuid4().hex[:12], context=context)

        with Timer() as timer:
            self._waiting += 1
            admitted = False
            try:
                async with self._admission:
                    admitted = True
                    self._waiting -= 1
                    self._in_flight += 1
                    try:
                        response = await self._run(message, run, timer)
                    finally:
                        self._in_flight -= 1
            finally:
                if not admitted:
                    self._waiting -= 1

        response = replace(response, elapsed_ms=timer.elapsed_ms)
        self._record_trace(run, response)
        logger.info(
            "Processed message for %s/%s via %s in %.1f ms (%s): %s",
            context.tenant_id,
            context.user_id,
            response.provider_used,
            response.elapsed_ms,
            run.state.value,
            message[:_LOG_PREVIEW_CHARS],
        )
        return response

    async def update_knowledge_base(self, documents: list[KnowledgeDocument]) -> int:
        """Upsert documents and drop cached replies and analyses."""
        written = await self.retriever.add_documents(documents)
        for entry_type in (CacheEntryType.RESPONSE, CacheEntryType.ANALYSIS):
            await self.cache.clear(self.cache.keys.type_pattern(entry_type))
        return written

    def switch_provider(self, kind: ProviderKind | str) -> ProviderDescriptor:
        return self.registry.set_active(kind).descriptor()

    def available_providers(self) -> list[ProviderDescriptor]:
        return self.registry.list_providers()

    def current_provider(self) -> ProviderDescriptor:
        return self.registry.get_active().descriptor()

    async def provider_health(self, *, refresh: bool = False) -> dict[ProviderKind, HealthSnapshot]:
        return await self.registry.health_snapshot(refresh=refresh)

    def cost_estimates(
        self, prompt_tokens: int, completion_tokens: int | None = None
    ) -> dict[ProviderKind, float]:
        if completion_tokens is None:
            completion_tokens = self.config.estimated_completion_tokens
        return self.registry.cost_estimates(prompt_tokens, completion_tokens)

    async def performance_analytics(self) -> dict[str, Any]:
        try:
            current = self.registry.get_active().name
        except ProviderUnavailable:
            current = None
        return {
            "active_conversations": len(self.memory),
            "customer_profiles": self.memory.profile_count,
            "evicted_conversations": self.memory.evicted,
            "cache": await self.cache.stats(),
            "concurrency": {
                "max_concurrent_requests": self.config.max_concurrent_requests,
                "in_flight": self._in_flight,
                "waiting": self._waiting,
            },
            "providers": {
                "available": [kind.value for kind in self.registry.kinds()],
                "current": current,
            },
            "retrieval_degraded_count": self.retriever.degraded_count,
        }

    def history(self, tenant_id: str, user_id: str) -> list[ConversationTurn]:
        return self.memory.history(tenant_id, user_id)

    def profile(self, tenant_id: str, user_id: str) -> CustomerProfile | None:
        return self.memory.profile(tenant_id, user_id)

    async def _run(self, message: str, run: _RequestRun, timer: Timer) -> AIResponse:
        context = run.context
        self._advance(run, RequestState.ADMITTED)
        try:
            tenant = await self._tenant_config(context.tenant_id)
            supplied = {
                name for name in ("stage", "topic", "urgency") if getattr(context, name) is not None
            }
            pattern_analysis = self.enricher.enrich(context, message)

            self._advance(run, RequestState.CACHE_CHECK)
            stage = context.stage or ConversationStage.INFORMATION_GATHERING
            response_key = self.cache.keys.response_key(
                context.tenant_id, context.user_id, message, stage.value
            )
            cached = await self.cache.get(response_key)
            if cached is not None:
                run.cache_hit = True
                self._advance(run, RequestState.RETURNED)
                return replace(AIResponse(**cached), cached=True)

            selection = await self._select(message, run, tenant)
            analysis = await self._analyze(message, run, pattern_analysis, selection, supplied)
            self._advance(run, RequestState.ANALYZED)

            template = self.templates.match(message, analysis)
            if template is not None:
                response = self._template_response(template, analysis, tenant)
            else:
                response = await self._generate(message, run, analysis, selection, tenant)
            self._advance(run, RequestState.GENERATED)

            await self.cache.set(
                response_key, asdict(response), self.config.response_cache_ttl_seconds
            )
            self._advance(run, RequestState.CACHED)
            await self.memory.record(
                context.tenant_id,
                context.user_id,
                message=message,
                reply=response.message,
                analysis=analysis,
            )
            self._advance(run, RequestState.RETURNED)
            return response
        except _FALLBACK_ERRORS as exc:
            run.fallback_reason = f"{type(exc).__name__}: {exc}"
            logger.warning("Request %s degraded to fallback reply: %s", run.request_id, exc)
        except Exception as exc:
            run.fallback_reason = f"{type(exc).__name__}: {exc}"
            logger.exception("Request %s failed unexpectedly", run.request_id)

        self._advance(run, RequestState.ERRORED)
        self._advance(run, RequestState.FALLBACK)
        return AIResponse(
            message=FALLBACK_MESSAGE,
            confidence=FALLBACK_CONFIDENCE,
            should_capture_lead=False,
            lead_score=FALLBACK_LEAD_SCORE,
            provider_used="fallback",
            estimated_cost=0.0,
            elapsed_ms=timer.lap_ms(),
            conversation_stage=(context.stage or ConversationStage.INFORMATION_GATHERING).value,
        )

    async def _select(
        self, message: str, run: _RequestRun, tenant: TenantConfig | None
    ) -> Selection | None:
        policy = SelectionPolicy.AUTO
        preferred = None
        if tenant is not None:
            policy = tenant.selection_policy or policy
            preferred = tenant.preferred_provider
        run.prompt_tokens = estimate_token_count(SYSTEM_PROMPT) + estimate_token_count(message)
        try:
            selection = await self.selector.select(
                policy,
                prompt_tokens=run.prompt_tokens,
                completion_tokens=self.config.estimated_completion_tokens,
                message=message,
                stage=run.context.stage,
                preferred=preferred,
            )
        except ProviderUnavailable as exc:
            # Templates can still answer without a provider.
            run.fallback_reason = str(exc)
            logger.warning("Request %s has no provider: %s", run.request_id, exc)
            return None
        run.policy = selection.policy
        self._advance(run, RequestState.PROVIDER_SELECTED)
        return selection

    async def _analyze(
        self,
        message: str,
        run: _RequestRun,
        pattern_analysis: Analysis | None,
        selection: Selection | None,
        supplied: set[str],
    ) -> Analysis:
        context = run.context
        analysis_key = self.cache.keys.analysis_key(context.tenant_id, message)
        cached = await self.cache.get(analysis_key)
        if cached is not None:
            analysis = analysis_from_dict(cached)
        else:
            analysis = pattern_analysis
            if analysis is None:
                if selection is None:
                    raise AnalysisInconclusive("no pattern matched and no provider is available")
                analysis = await self._provider_analysis(message, selection.adapter)
            await self.cache.set(
                analysis_key, analysis_to_dict(analysis), self.config.analysis_cache_ttl_seconds
            )

        if "stage" in supplied and context.stage is not None:
            analysis = replace(analysis, stage=context.stage)
        if "topic" in supplied and context.topic is not None:
            analysis = replace(analysis, topic=context.topic)
        if "urgency" in supplied and context.urgency is not None:
            analysis = replace(analysis, urgency=context.urgency)
        context.stage = analysis.stage
        context.topic = analysis.topic
        context.urgency = analysis.urgency
        if context.lead_score is None:
            context.lead_score = lead_score(analysis)
        return analysis

    async def _provider_analysis(self, message: str, adapter: ProviderAdapter) -> Analysis:
        timeout = self.config.analysis_timeout_seconds
        try:
            completion = await asyncio.wait_for(
                adapter.complete(
                    build_analysis_messages(message),
                    max_tokens=self.config.completion_max_tokens,
                    temperature=0.1,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
            return parse_provider_analysis(completion.text)
        except (asyncio.TimeoutError, ProviderTimeout, ProviderRequestError, ValueError) as exc:
            raise AnalysisInconclusive(f"provider analysis via {adapter.name} failed: {exc}") from exc

    async def _generate(
        self,
        message: str,
        run: _RequestRun,
        analysis: Analysis,
        selection: Selection | None,
        tenant: TenantConfig | None,
    ) -> AIResponse:
        if selection is None:
            raise ProviderUnavailable(run.fallback_reason or "no provider selected")
        context = run.context
        passages = await self.retriever.search_for_context(
            message, tenant_id=context.tenant_id, topic=analysis.topic
        )
        self._advance(run, RequestState.RETRIEVED)

        adapter = selection.adapter
        messages = build_generation_messages(
            message,
            passages,
            history=self.memory.history(context.tenant_id, context.user_id),
            branding_tone=tenant.branding_tone if tenant else None,
        )
        timeout = self.config.generation_timeout_seconds
        try:
            completion = await asyncio.wait_for(
                adapter.complete(
                    messages,
                    max_tokens=self.config.completion_max_tokens,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(f"{adapter.name} generation exceeded {timeout:.1f}s") from exc

        run.prompt_tokens = completion.prompt_tokens or sum(
            estimate_token_count(item.content) for item in messages
        )
        run.completion_tokens = completion.completion_tokens or estimate_token_count(completion.text)
        text = completion.text.strip() or FALLBACK_MESSAGE
        capture = analysis.lead_readiness in (LeadReadiness.WARM, LeadReadiness.HOT)
        return AIResponse(
            message=_decorate(text, tenant),
            confidence=_confidence(passages),
            should_capture_lead=capture,
            lead_score=context.lead_score if context.lead_score is not None else lead_score(analysis),
            provider_used=adapter.name,
            estimated_cost=adapter.estimate_cost(run.prompt_tokens, run.completion_tokens),
            elapsed_ms=0.0,
            conversation_stage=analysis.stage.value,
        )

    def _template_response(
        self, template: TemplateReply, analysis: Analysis, tenant: TenantConfig | None
    ) -> AIResponse:
        return AIResponse(
            message=_decorate(template.message, tenant),
            confidence=template.confidence,
            should_capture_lead=template.should_capture_lead,
            lead_score=template.lead_score,
            provider_used="template",
            estimated_cost=0.0,
            elapsed_ms=0.0,
            conversation_stage=template.stage.value,
        )

    async def _tenant_config(self, tenant_id: str) -> TenantConfig | None:
        if self.tenants is None:
            return None
        return await self.tenants.get_config(tenant_id)

    def _advance(self, run: _RequestRun, state: RequestState) -> None:
        run.state = state
        if self._observer is not None:
            self._observer(run.request_id, state)

    def _record_trace(self, run: _RequestRun, response: AIResponse) -> None:
        self.trace_store.create_record(
            tenant_id=run.context.tenant_id,
            user_id=run.context.user_id,
            provider=response.provider_used,
            policy=run.policy.value if run.policy else None,
            final_state=run.state.value,
            cache_hit=run.cache_hit,
            fallback_reason=run.fallback_reason if response.provider_used == "fallback" else None,
            input_tokens=run.prompt_tokens,
            output_tokens=run.completion_tokens,
            estimated_cost_usd=response.estimated_cost,
            latency_ms=response.elapsed_ms,
        )


def _confidence(passages: list[Passage]) -> float:
    if not passages:
        return 0.5
    average = sum(passage.score for passage in passages) / len(passages)
    return round(min(max(average, 0.0) + 0.1, 0.95), 3)


def _decorate(text: str, tenant: TenantConfig | None) -> str:
    if tenant is None or not tenant.contact_info:
        return text
    return f"{text}\n\n{tenant.contact_info}"
