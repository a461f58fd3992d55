"""Core domain models for the RAG relay."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar, Union

from .errors import RagError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Query:
    text: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    top_k: int | None = None
    min_score: float | None = None
    max_tokens: int | None = None
    model_hint: str | None = None


@dataclass(frozen=True, slots=True)
class EmbeddingVector:
    values: tuple[float, ...]
    model_id: str

    @property
    def dimension(self) -> int:
        return len(self.values)

    def as_list(self) -> list[float]:
        return list(self.values)


@dataclass(slots=True)
class CacheEntry:
    vector: EmbeddingVector
    inserted_at: float


@dataclass(slots=True)
class StoredDocument:
    document_id: str
    text: str
    metadata: dict[str, Any]
    sequence: int
    revision: int
    stored_at: datetime


@dataclass(frozen=True, slots=True)
class IndexHit:
    id: str
    score: float
    payload: dict[str, Any]


@dataclass(slots=True)
class RetrievedChunk:
    document_id: str
    chunk_id: str
    text: str
    score: float
    metadata: dict[str, Any]
    stored_sequence: int = 0


@dataclass(frozen=True, slots=True)
class PromptSegment:
    role: str
    text: str


@dataclass(frozen=True, slots=True)
class AssembledPrompt:
    segments: tuple[PromptSegment, ...]
    budget: int
    template_version: str
    separator: str = "\n\n"

    def render(self) -> str:
        return self.separator.join(segment.text for segment in self.segments)

    @property
    def size(self) -> int:
        return len(self.render())

    @property
    def context_segments(self) -> tuple[PromptSegment, ...]:
        return tuple(segment for segment in self.segments if segment.role == "context")


@dataclass(frozen=True, slots=True)
class TokenChunk:
    text: str
    sequence: int


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class Degraded:
    reason: str
    error: RagError | None = None


@dataclass(frozen=True, slots=True)
class Fatal:
    error: RagError


StageResult = Union[Ok[T], Degraded, Fatal]
