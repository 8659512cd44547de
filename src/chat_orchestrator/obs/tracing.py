"""Request tracing, timing, and token accounting."""

from __future__ import annotations

import re
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class RequestTrace:
    trace_id: str
    timestamp_utc: str
    tenant_id: str
    user_id: str
    provider: str
    policy: str | None
    final_state: str
    cache_hit: bool
    fallback_reason: str | None
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float


class TraceStore:
    """Bounded in-memory trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 5000) -> None:
        self._records: dict[str, RequestTrace] = {}
        self._max_records = max_records

    def create_record(
        self,
        *,
        tenant_id: str,
        user_id: str,
        provider: str,
        policy: str | None,
        final_state: str,
        cache_hit: bool,
        fallback_reason: str | None,
        input_tokens: int,
        output_tokens: int,
        estimated_cost_usd: float,
        latency_ms: float,
    ) -> RequestTrace:
        record = RequestTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            tenant_id=tenant_id,
            user_id=user_id,
            provider=provider,
            policy=policy,
            final_state=final_state,
            cache_hit=cache_hit,
            fallback_reason=fallback_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=estimated_cost_usd,
            latency_ms=latency_ms,
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> RequestTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[RequestTrace]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, object]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "cache_hit_rate": 0.0,
                "fallback_count": 0,
                "requests_by_provider": {},
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        cache_hits = sum(1 for record in records if record.cache_hit)
        fallbacks = sum(1 for record in records if record.fallback_reason is not None)

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "cache_hit_rate": cache_hits / total,
            "fallback_count": fallbacks,
            "requests_by_provider": dict(Counter(record.provider for record in records)),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
        }


class Timer:
    """Simple context timer used around pipeline stages."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

    def lap_ms(self) -> float:
        """Milliseconds since entering, usable while the block is still running."""
        return (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
