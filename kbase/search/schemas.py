"""Value objects shared by the retrieval, ranking and cache layers.

Defines:
- NoteItem: a note as seen by the search layer (no embedding attached)
- SearchResult: ordered notes plus a total-found count (the cached unit)
- EmbeddingOutcome: explicit result of an embedding call
- RetrievalOutcome: explicit result of one retrieval path
- BackfillTask: one note waiting for an embedding
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class NoteItem(BaseModel):
    """A stored note returned by search.

    Attributes:
        id: Opaque note identifier (UUID string).
        user_id: Owning tenant.
        content: Note text.
        created_at: ISO 8601 creation timestamp, or None.
        tags: Free-form tags (unique, unordered).
        category: Optional category label.
        metadata: Arbitrary key-value bag.
    """

    id: str
    user_id: int
    content: str
    created_at: str | None = None
    tags: list[str] = []
    category: str | None = None
    metadata: dict[str, Any] = {}


class SearchResult(BaseModel):
    """Ordered search hits with the total-found count."""

    notes: list[NoteItem]
    total_found: int

    @classmethod
    def empty(cls) -> SearchResult:
        return cls(notes=[], total_found=0)


class QueryResponse(BaseModel):
    """Answer produced by the question-answering flow."""

    answer: str
    sources: list[str] = []


class EmbeddingStatus(StrEnum):
    OK = "ok"
    EMPTY = "empty"  # blank input, nothing to embed
    UNAVAILABLE = "unavailable"  # provider down or unconfigured
    FAILED = "failed"  # provider answered with an error


@dataclass(frozen=True)
class EmbeddingOutcome:
    """Result of embedding a single text.

    ``vector`` is set only when ``status`` is ``OK``.
    """

    status: EmbeddingStatus
    vector: list[float] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is EmbeddingStatus.OK

    @classmethod
    def success(cls, vector: list[float]) -> EmbeddingOutcome:
        return cls(status=EmbeddingStatus.OK, vector=vector)

    @classmethod
    def empty(cls) -> EmbeddingOutcome:
        return cls(status=EmbeddingStatus.EMPTY)

    @classmethod
    def unavailable(cls, reason: str) -> EmbeddingOutcome:
        return cls(status=EmbeddingStatus.UNAVAILABLE, error=reason)

    @classmethod
    def failed(cls, reason: str) -> EmbeddingOutcome:
        return cls(status=EmbeddingStatus.FAILED, error=reason)


@dataclass
class RetrievalOutcome:
    """Candidates produced by one retrieval path, or the error that stopped it.

    Attributes:
        path: "vector" or "lexical".
        candidates: ``(note, score)`` pairs in the path's own order.
        error: Set when the path failed; candidates are then empty.
    """

    path: str
    candidates: list[tuple[NoteItem, float]] = field(default_factory=list)
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class BackfillTask:
    """A note lacking an embedding, as fetched by the backfill pipeline."""

    note_id: str
    content: str
