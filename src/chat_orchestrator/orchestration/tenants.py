"""Per-tenant configuration consumed at request time."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, Field

from chat_orchestrator.types import ProviderKind, SelectionPolicy


class TenantConfig(BaseModel):
    """Tenant overrides applied to selection and reply decoration."""

    tenant_id: str = Field(min_length=1)
    preferred_provider: ProviderKind | None = None
    selection_policy: SelectionPolicy | None = None
    branding_tone: str | None = None
    contact_info: str | None = None


class TenantConfigSource(Protocol):
    async def get_config(self, tenant_id: str) -> TenantConfig | None:
        """Return the tenant's configuration, or None when it has none."""


class InMemoryTenantConfigSource:
    def __init__(self, configs: list[TenantConfig] | None = None) -> None:
        self._configs = {config.tenant_id: config for config in configs or []}

    def put(self, config: TenantConfig) -> None:
        self._configs[config.tenant_id] = config

    async def get_config(self, tenant_id: str) -> TenantConfig | None:
        return self._configs.get(tenant_id)
