"""
Data models for the chat service.

- Tenant registry snapshot (immutable, swapped wholesale on reload)
- Knowledge-base entries and their ranked form
- Usage records written to the JSONL sink
- Request/response bodies for the HTTP API
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from collections.abc import Mapping
from typing import Optional, List, Dict, Any, Iterator

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Tenancy
# ============================================================================


@dataclass(frozen=True)
class TenantConfig:
    """One tenant: normalized slug, display name and exact-match origins."""

    slug: str
    name: str
    allowed_origins: frozenset = field(default_factory=frozenset)

    @property
    def display_name(self) -> str:
        return self.name or self.slug.replace("-", " ")


class Registry(Mapping):
    """Read-only slug -> TenantConfig snapshot."""

    def __init__(self, tenants: Optional[Dict[str, TenantConfig]] = None):
        self._tenants = MappingProxyType(dict(tenants or {}))

    def __getitem__(self, slug: str) -> TenantConfig:
        return self._tenants[slug]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tenants)

    def __len__(self) -> int:
        return len(self._tenants)

    def is_known_origin(self, origin: str) -> bool:
        """True if any tenant lists this origin."""
        return any(origin in t.allowed_origins for t in self._tenants.values())

    def __repr__(self) -> str:
        return f"Registry(tenants={sorted(self._tenants)})"


# ============================================================================
# Knowledge base
# ============================================================================


@dataclass(frozen=True)
class KBEntry:
    question: str
    answer: str

    def to_record(self) -> Dict[str, str]:
        """Canonical on-disk shape ({"q", "a"})."""
        return {"q": self.question, "a": self.answer}


@dataclass(frozen=True)
class RankedEntry:
    question: str
    answer: str
    score: int = 0

    @classmethod
    def from_entry(cls, entry: KBEntry, score: int) -> "RankedEntry":
        return cls(question=entry.question, answer=entry.answer, score=score)


class AnswerKind(str, Enum):
    KB = "kb"
    LLM = "llm"


@dataclass(frozen=True)
class UsageRecord:
    """One resolved request, serialized as a JSON line."""

    client: str
    origin: str
    kind: AnswerKind
    input_length: int
    output_length: int
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "client": self.client,
            "origin": self.origin,
            "kind": self.kind.value,
            "in": self.input_length,
            "out": self.output_length,
        }


@dataclass
class Resolution:
    """Outcome of the answer pipeline for one request."""

    reply: str
    unsure: bool
    kind: AnswerKind
    client: str
    input_length: int = 0
    suggestions: List[str] = field(default_factory=list)
    top_score: int = 0

    def to_response(self) -> Dict[str, Any]:
        return {"reply": self.reply, "unsure": self.unsure, "suggestions": self.suggestions}

    def usage_record(self, origin: str) -> UsageRecord:
        return UsageRecord(
            client=self.client,
            origin=origin,
            kind=self.kind,
            input_length=self.input_length,
            output_length=len(self.reply),
        )


# ============================================================================
# HTTP bodies
# ============================================================================


class ChatRequest(BaseModel):
    """Inbound chat message. Over-long messages are truncated, not rejected.

    Both fields are coerced to text downstream; null or non-string values are
    accepted rather than rejected.
    """

    model_config = ConfigDict(json_schema_extra={
        "example": {"client": "demo", "message": "What are your opening hours?"}
    })

    client: Optional[Any] = Field(default=None, description="Tenant slug")
    message: Optional[Any] = Field(default="", description="User message")


class ChatResponse(BaseModel):
    reply: str
    unsure: bool
    suggestions: Optional[List[str]] = None


class ErrorResponse(BaseModel):
    reply: str
    unsure: bool = True
