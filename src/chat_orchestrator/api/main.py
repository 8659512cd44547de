"""FastAPI entrypoint exposing the request orchestrator."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from chat_orchestrator.config import get_settings
from chat_orchestrator.errors import ProviderUnavailable
from chat_orchestrator.obs.logging import setup_logging
from chat_orchestrator.services import Services, build_services
from chat_orchestrator.types import (
    ConversationStage,
    HealthStatus,
    KnowledgeDocument,
    ProviderKind,
    RequestContext,
    Urgency,
)


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    platform: str = "api"
    stage: ConversationStage | None = None
    topic: str | None = None
    urgency: Urgency | None = None
    lead_score: int | None = Field(default=None, ge=0, le=10)


class SwitchProviderRequest(BaseModel):
    provider: str = Field(min_length=1)


class DocumentIn(BaseModel):
    content: str = Field(min_length=1)
    doc_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class KnowledgeUpdateRequest(BaseModel):
    documents: list[DocumentIn] = Field(min_length=1)
    tenant_id: str | None = None


class KnowledgeSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    tenant_id: str | None = None
    top_k: int = Field(default=2, ge=1, le=10)


def create_app(injected: Services | None = None) -> FastAPI:
    """Build the app; tests pass `injected` services, otherwise they are built from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings() if injected is None else injected.settings
        setup_logging(settings.log_level, json_output=settings.log_json)
        app.state.services = injected or build_services(settings)
        await app.state.services.startup()
        try:
            yield
        finally:
            await app.state.services.aclose()

    app = FastAPI(title="Chat Orchestrator", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health(services: Services = Depends(_services)) -> dict[str, Any]:
        cache_health = await services.cache.health()
        snapshots = await services.orchestrator.provider_health()
        healthy = [kind.value for kind, snap in snapshots.items() if snap.is_healthy]
        ok = bool(healthy) and cache_health.status is not HealthStatus.UNHEALTHY
        return {
            "status": "ok" if ok else "degraded",
            "cache": asdict(cache_health),
            "healthy_providers": healthy,
            "trace_count": len(services.trace_store.list_recent(limit=1000)),
        }

    @app.post("/messages")
    async def process_message(
        request: MessageRequest, services: Services = Depends(_services)
    ) -> dict[str, Any]:
        context = RequestContext(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            platform=request.platform,
            stage=request.stage,
            topic=request.topic,
            urgency=request.urgency,
            lead_score=request.lead_score,
        )
        response = await services.orchestrator.process_message(
            request.message,
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            context=context,
        )
        return asdict(response)

    @app.get("/providers")
    async def providers(services: Services = Depends(_services)) -> dict[str, Any]:
        try:
            current = services.orchestrator.current_provider().kind.value
        except ProviderUnavailable:
            current = None
        return {
            "items": [asdict(item) for item in services.orchestrator.available_providers()],
            "active": current,
        }

    @app.post("/providers/active")
    async def switch_provider(
        request: SwitchProviderRequest, services: Services = Depends(_services)
    ) -> dict[str, Any]:
        try:
            descriptor = services.orchestrator.switch_provider(ProviderKind(request.provider))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(descriptor)

    @app.get("/providers/health")
    async def provider_health(
        refresh: bool = False, services: Services = Depends(_services)
    ) -> dict[str, Any]:
        snapshots = await services.orchestrator.provider_health(refresh=refresh)
        return {"items": {kind.value: asdict(snap) for kind, snap in snapshots.items()}}

    @app.get("/providers/costs")
    async def provider_costs(
        prompt_tokens: int = 100,
        completion_tokens: int | None = None,
        services: Services = Depends(_services),
    ) -> dict[str, Any]:
        if prompt_tokens < 0 or (completion_tokens is not None and completion_tokens < 0):
            raise HTTPException(status_code=400, detail="Token counts must be non-negative")
        estimates = services.orchestrator.cost_estimates(prompt_tokens, completion_tokens)
        return {"items": {kind.value: cost for kind, cost in estimates.items()}}

    @app.post("/knowledge")
    async def update_knowledge(
        request: KnowledgeUpdateRequest, services: Services = Depends(_services)
    ) -> dict[str, Any]:
        documents = [
            KnowledgeDocument(
                doc_id=item.doc_id or uuid.uuid4().hex,
                content=item.content,
                metadata=(
                    {**item.metadata, "tenant_id": request.tenant_id}
                    if request.tenant_id
                    else dict(item.metadata)
                ),
            )
            for item in request.documents
        ]
        written = await services.orchestrator.update_knowledge_base(documents)
        return {"documents_written": written, "doc_ids": [doc.doc_id for doc in documents]}

    @app.post("/knowledge/search")
    async def search_knowledge(
        request: KnowledgeSearchRequest, services: Services = Depends(_services)
    ) -> dict[str, Any]:
        metadata_filter = {"tenant_id": request.tenant_id} if request.tenant_id else None
        passages = await services.retriever.search(request.query, request.top_k, metadata_filter)
        return {"items": [asdict(passage) for passage in passages]}

    @app.delete("/cache/tenants/{tenant_id}")
    async def invalidate_tenant(tenant_id: str, services: Services = Depends(_services)) -> dict[str, Any]:
        cleared = await services.cache.invalidate_tenant(tenant_id)
        return {"tenant_id": tenant_id, "cleared": cleared}

    @app.get("/cache/stats")
    async def cache_stats(services: Services = Depends(_services)) -> dict[str, Any]:
        return await services.cache.stats()

    @app.get("/metrics")
    async def metrics(services: Services = Depends(_services)) -> dict[str, Any]:
        return {
            **services.trace_store.summary(),
            "analytics": await services.orchestrator.performance_analytics(),
        }

    @app.get("/traces")
    async def traces(limit: int = 20, services: Services = Depends(_services)) -> dict[str, Any]:
        records = [asdict(record) for record in services.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    async def trace_detail(trace_id: str, services: Services = Depends(_services)) -> dict[str, Any]:
        try:
            record = services.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    return app


def _services(request: Request) -> Services:
    return request.app.state.services


app = create_app()
