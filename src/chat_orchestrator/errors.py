"""Error taxonomy for the orchestration core."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for the orchestration core."""


class ProviderUnavailable(OrchestratorError):
    """No healthy provider is available for the requested policy."""


class ProviderTimeout(OrchestratorError):
    """A provider call exceeded its time bound."""


class ProviderRequestError(OrchestratorError):
    """A provider call failed at the transport or protocol level."""


class CapabilityNotSupported(OrchestratorError):
    """The provider does not implement the requested operation."""


class RetrievalDegraded(OrchestratorError):
    """Filtered knowledge search failed; an unfiltered retry was used or also failed."""


class CacheBackendError(OrchestratorError):
    """A cache tier is unreachable."""


class AnalysisInconclusive(OrchestratorError):
    """Neither the pattern classifier nor the provider-backed classifier produced a result."""
