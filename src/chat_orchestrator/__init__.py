"""Multi-tenant conversational AI orchestration core."""

from .config import CacheConfig, OrchestratorConfig, ProviderConfig, RetrievalConfig, Settings

__all__ = ["CacheConfig", "OrchestratorConfig", "ProviderConfig", "RetrievalConfig", "Settings"]
