"""Configuration models for the orchestration core."""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_orchestrator.types import ProviderKind


class CacheConfig(BaseModel):
    """Configures the cache tiers and key namespace."""

    namespace: str = Field(default="convo", min_length=1)
    max_entries: int = Field(default=1000, ge=1)
    default_ttl_seconds: float = Field(default=300.0, gt=0.0)
    sweep_interval_seconds: float | None = Field(default=60.0, gt=0.0)
    backfill_ttl_seconds: float = Field(default=300.0, gt=0.0)
    operation_timeout_seconds: float = Field(default=2.0, gt=0.0)


class HealthThresholds(BaseModel):
    """Latency and error-rate cutoffs used to classify a provider probe."""

    degraded_latency_ms: float = Field(default=10_000.0, gt=0.0)
    unhealthy_latency_ms: float = Field(default=20_000.0, gt=0.0)
    degraded_error_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    unhealthy_error_rate: float = Field(default=0.3, ge=0.0, le=1.0)


class ModelProfile(BaseModel):
    """Pricing and capacity figures for one model."""

    max_context_length: int = Field(ge=1)
    cost_per_token: float = Field(ge=0.0)
    average_latency_ms: float = Field(ge=0.0)


class ProviderConfig(BaseModel):
    """Connection and tuning parameters for one provider adapter."""

    kind: ProviderKind
    model: str
    api_key: str | None = None
    base_url: str | None = None
    max_tokens: int = Field(default=500, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0.0)
    thresholds: HealthThresholds | None = None
    profile: ModelProfile | None = None


class RetrievalConfig(BaseModel):
    """Configures knowledge retrieval and its result cache."""

    top_k: int = Field(default=2, ge=1, le=10)
    locale_token: str = "Ghana"
    cache_ttl_seconds: float = Field(default=300.0, gt=0.0)
    max_passage_chars: int = Field(default=1000, ge=50)
    search_timeout_seconds: float = Field(default=2.0, gt=0.0)
    embedding_dimension: int = Field(default=256, ge=8)
    min_token_chars: int = Field(default=2, ge=1)


class OrchestratorConfig(BaseModel):
    """Configures admission, timeouts, and response bookkeeping."""

    max_concurrent_requests: int = Field(default=5, ge=1)
    analysis_timeout_seconds: float = Field(default=2.0, gt=0.0)
    generation_timeout_seconds: float = Field(default=6.0, gt=0.0)
    completion_max_tokens: int = Field(default=200, ge=1)
    estimated_completion_tokens: int = Field(default=100, ge=1)
    history_turns: int = Field(default=5, ge=1)
    max_conversations: int = Field(default=10_000, ge=1)
    response_cache_ttl_seconds: float = Field(default=300.0, gt=0.0)
    analysis_cache_ttl_seconds: float = Field(default=600.0, gt=0.0)
    health_cache_seconds: float = Field(default=30.0, ge=0.0)
    quality_preference: list[ProviderKind] = Field(
        default_factory=lambda: [ProviderKind.CLAUDE, ProviderKind.OPENAI]
    )


class Settings(BaseSettings):
    """Process settings read from the environment and an optional `.env` file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"
    log_json: bool = False

    openai_api_key: str | None = None
    openai_model: str = "gpt-3.5-turbo"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_timeout_seconds: float = 30.0

    anthropic_api_key: str | None = None
    claude_model: str = "claude-3-haiku-20240307"
    claude_base_url: str = "https://api.anthropic.com/v1"
    claude_timeout_seconds: float = 30.0

    local_llm_endpoint: str | None = None
    ollama_enabled: bool = False
    local_llm_model: str = "llama2"
    local_llm_timeout_seconds: float = 60.0

    deepseek_api_key: str | None = None
    deepseek_model: str = "deepseek-chat"
    deepseek_base_url: str = "https://api.deepseek.com/v1"
    deepseek_timeout_seconds: float = 30.0

    default_llm_provider: ProviderKind = ProviderKind.OPENAI
    embedding_provider: ProviderKind = ProviderKind.OPENAI

    redis_url: str | None = None
    cache_namespace: str = "convo"
    cache_timeout_seconds: float = Field(default=2.0, gt=0.0)
    max_concurrent_requests: int = Field(default=5, ge=1)

    def provider_configs(self) -> list[ProviderConfig]:
        """Return one config per provider whose credentials or endpoint are present."""
        configs: list[ProviderConfig] = []
        if self.openai_api_key:
            configs.append(
                ProviderConfig(
                    kind=ProviderKind.OPENAI,
                    model=self.openai_model,
                    api_key=self.openai_api_key,
                    base_url=self.openai_base_url,
                    timeout_seconds=self.openai_timeout_seconds,
                )
            )
        if self.anthropic_api_key:
            configs.append(
                ProviderConfig(
                    kind=ProviderKind.CLAUDE,
                    model=self.claude_model,
                    api_key=self.anthropic_api_key,
                    base_url=self.claude_base_url,
                    timeout_seconds=self.claude_timeout_seconds,
                )
            )
        if self.local_llm_endpoint or self.ollama_enabled:
            configs.append(
                ProviderConfig(
                    kind=ProviderKind.LOCAL_LLAMA,
                    model=self.local_llm_model,
                    base_url=self.local_llm_endpoint or "http://127.0.0.1:11434",
                    timeout_seconds=self.local_llm_timeout_seconds,
                )
            )
        if self.deepseek_api_key:
            configs.append(
                ProviderConfig(
                    kind=ProviderKind.DEEPSEEK,
                    model=self.deepseek_model,
                    api_key=self.deepseek_api_key,
                    base_url=self.deepseek_base_url,
                    timeout_seconds=self.deepseek_timeout_seconds,
                )
            )
        return configs

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            namespace=self.cache_namespace,
            operation_timeout_seconds=self.cache_timeout_seconds,
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(max_concurrent_requests=self.max_concurrent_requests)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
