"""Hierarchical, reversible cache key construction.

Layout::

    {namespace}:{type}[:t:{tenant}][:u:{user}]:id:{identifier}[:v:{version}]

Every component is percent-encoded, so no component can contain the ``:``
separator or a glob metacharacter. Distinct component tuples therefore always
map to distinct strings, and `parse` recovers the original components.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote, unquote

_MARKERS = ("t", "u", "id", "v")
_WHITESPACE = re.compile(r"\s+")


class CacheEntryType(str, Enum):
    RESPONSE = "response"
    ANALYSIS = "analysis"
    KNOWLEDGE = "knowledge"
    CONVERSATION = "conversation"
    PROFILE = "profile"
    CONFIG = "config"


@dataclass(frozen=True, slots=True)
class CacheKey:
    namespace: str
    entry_type: CacheEntryType
    identifier: str
    tenant_id: str | None = None
    user_id: str | None = None
    version: str | None = None


def _encode(component: str) -> str:
    return quote(component, safe="")


class CacheKeyBuilder:
    def __init__(self, namespace: str = "convo") -> None:
        if not namespace:
            raise ValueError("namespace must be non-empty")
        self.namespace = _encode(namespace)

    def build(
        self,
        entry_type: CacheEntryType,
        identifier: str,
        *,
        tenant_id: str | None = None,
        user_id: str | None = None,
        version: str | None = None,
    ) -> str:
        parts = [self.namespace, CacheEntryType(entry_type).value]
        if tenant_id is not None:
            parts += ["t", _encode(tenant_id)]
        if user_id is not None:
            parts += ["u", _encode(user_id)]
        parts += ["id", _encode(identifier)]
        if version is not None:
            parts += ["v", _encode(version)]
        return ":".join(parts)

    def parse(self, key: str) -> CacheKey:
        parts = key.split(":")
        if len(parts) < 4 or len(parts) % 2 != 0:
            raise ValueError(f"Malformed cache key: {key}")
        namespace, raw_type = parts[0], parts[1]
        try:
            entry_type = CacheEntryType(raw_type)
        except ValueError as exc:
            raise ValueError(f"Unknown cache entry type in key: {key}") from exc

        fields: dict[str, str] = {}
        last_index = -1
        for marker, value in zip(parts[2::2], parts[3::2]):
            if marker not in _MARKERS or marker in fields:
                raise ValueError(f"Malformed cache key: {key}")
            index = _MARKERS.index(marker)
            if index <= last_index:
                raise ValueError(f"Cache key components out of order: {key}")
            last_index = index
            fields[marker] = unquote(value)
        if "id" not in fields:
            raise ValueError(f"Cache key has no identifier: {key}")

        return CacheKey(
            namespace=unquote(namespace),
            entry_type=entry_type,
            identifier=fields["id"],
            tenant_id=fields.get("t"),
            user_id=fields.get("u"),
            version=fields.get("v"),
        )

    def tenant_patterns(self, tenant_id: str) -> list[str]:
        """Globs that together match every key scoped to `tenant_id`.

        One pattern per entry type keeps the tenant segment anchored right
        after the type, so a user or identifier equal to the tenant id never
        matches.
        """
        tenant = _encode(tenant_id)
        return [f"{self.namespace}:{entry_type.value}:t:{tenant}:*" for entry_type in CacheEntryType]

    def type_pattern(self, entry_type: CacheEntryType) -> str:
        return f"{self.namespace}:{CacheEntryType(entry_type).value}:*"

    def response_key(self, tenant_id: str, user_id: str, message: str, stage: str) -> str:
        return self.build(
            CacheEntryType.RESPONSE,
            f"{stage}|{normalize_message(message)}",
            tenant_id=tenant_id,
            user_id=user_id,
        )

    def analysis_key(self, tenant_id: str, message: str) -> str:
        return self.build(CacheEntryType.ANALYSIS, normalize_message(message), tenant_id=tenant_id)


def normalize_message(message: str) -> str:
    return _WHITESPACE.sub(" ", message.strip().lower())
