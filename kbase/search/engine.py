# @TEST tests/test_vector_lexical.py
# @TEST tests/test_fusion.py
# @TEST tests/test_hybrid_search.py

"""Vector, lexical, and hybrid search engines.

Vector search: pgvector cosine similarity over ``notes.embedding`` (HNSW index).
Lexical search: case-insensitive substring matching on note content,
ranked by the number of matched terms, then recency.
Hybrid search: concurrent fan-out to both paths, score fusion with
adaptive weights, and a result cache in front.
"""

from __future__ import annotations

import asyncio
import logging
import operator
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import reduce
from typing import Any

from sqlalchemy import case, or_, select
from sqlalchemy.orm import defer

from kbase.database import SessionFactory
from kbase.models import Note
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.errors import CacheUnavailable, RetrievalFailure
from kbase.search.params import get_search_params
from kbase.search.query_preprocessor import analyze_query
from kbase.search.schemas import EmbeddingStatus, NoteItem, RetrievalOutcome, SearchResult

logger = logging.getLogger(__name__)

SearchRecorder = Callable[..., Awaitable[Any]]


def _dt_to_iso(dt: datetime | None) -> str | None:
    """Convert a datetime to an ISO 8601 string (UTC when naive), or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def note_to_item(note: Note) -> NoteItem:
    """Convert a ``Note`` row into the search-layer value object."""
    return NoteItem(
        id=str(note.id),
        user_id=note.user_id,
        content=note.content,
        created_at=_dt_to_iso(note.created_at),
        tags=list(note.tags or []),
        category=note.category,
        metadata=dict(note.note_metadata or {}),
    )


def _capped(result: SearchResult, limit: int) -> SearchResult:
    if len(result.notes) <= limit:
        return result
    notes = result.notes[:limit]
    return SearchResult(notes=notes, total_found=len(notes))


def _apply_filters(stmt, tags: list[str] | None, category: str | None):
    """Restrict a notes query to a category and/or any of the given tags."""
    if category is not None:
        stmt = stmt.where(Note.category == category)
    if tags:
        stmt = stmt.where(or_(*[Note.tags.contains([tag]) for tag in tags]))
    return stmt


class VectorSearchEngine:
    """pgvector-based nearest-neighbour search scoped to one user.

    Similarity is ``1 - cosine_distance``. Ordering by the raw distance
    lets PostgreSQL use the HNSW index on ``notes.embedding``.

    Args:
        session_factory: Factory producing a fresh session per call, so
            that this engine can run concurrently with the lexical path.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def search(
        self,
        user_id: int,
        embedding: list[float],
        limit: int = 100,
        min_similarity: float = 0.0,
        tags: list[str] | None = None,
        category: str | None = None,
    ) -> list[tuple[NoteItem, float]]:
        """Return up to *limit* ``(note, similarity)`` pairs, most similar first.

        Only notes with similarity strictly above *min_similarity* are returned.
        """
        if not embedding:
            return []

        distance = Note.embedding.cosine_distance(embedding)
        similarity = (1 - distance).label("similarity")

        stmt = (
            select(Note, similarity)
            .options(defer(Note.embedding))
            .where(
                Note.user_id == user_id,
                Note.embedding.is_not(None),
                (1 - distance) > min_similarity,
            )
            .order_by(distance.asc())
            .limit(limit)
        )
        stmt = _apply_filters(stmt, tags, category)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [(note_to_item(row.Note), float(row.similarity)) for row in rows]

    async def find_similar(
        self,
        note_id: str,
        user_id: int,
        limit: int = 5,
        threshold: float = 0.5,
    ) -> list[tuple[NoteItem, float]]:
        """Return notes of the same user most similar to a stored note.

        The note itself is excluded. Returns ``[]`` when the note has no
        embedding or does not belong to *user_id*.
        """
        target = (
            select(Note.embedding)
            .where(Note.id == uuid.UUID(note_id), Note.user_id == user_id)
            .scalar_subquery()
        )
        distance = Note.embedding.cosine_distance(target)
        similarity = (1 - distance).label("similarity")

        stmt = (
            select(Note, similarity)
            .options(defer(Note.embedding))
            .where(
                Note.user_id == user_id,
                Note.id != uuid.UUID(note_id),
                Note.embedding.is_not(None),
                (1 - distance) > threshold,
            )
            .order_by(distance.asc())
            .limit(limit)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [(note_to_item(row.Note), float(row.similarity)) for row in rows if row.similarity is not None]


class LexicalSearchEngine:
    """Substring search over note content, scoped to one user.

    The query is split into terms (see
    :func:`kbase.search.query_preprocessor.analyze_query`); a note matches
    when its content contains any term, case-insensitively. Notes matching
    more distinct terms come first, newer notes break ties.

    Args:
        session_factory: Factory producing a fresh session per call.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def search(
        self,
        user_id: int,
        query: str,
        limit: int = 50,
        tags: list[str] | None = None,
        category: str | None = None,
    ) -> list[NoteItem]:
        """Return up to *limit* matching notes in relevance order."""
        terms = analyze_query(query).search_terms
        if not terms:
            return []

        matches = [Note.content.icontains(term, autoescape=True) for term in terms]
        match_count = reduce(operator.add, [case((m, 1), else_=0) for m in matches]).label("match_count")

        stmt = (
            select(Note, match_count)
            .options(defer(Note.embedding))
            .where(Note.user_id == user_id, or_(*matches))
            .order_by(match_count.desc(), Note.created_at.desc())
            .limit(limit)
        )
        stmt = _apply_filters(stmt, tags, category)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return [note_to_item(row.Note) for row in rows]


@dataclass
class ScoredNote:
    """Fusion bookkeeping for one note."""

    note: NoteItem
    vector_score: float
    text_score: float
    final_score: float


def adaptive_weights(
    vector_score: float,
    text_score: float,
    params: dict[str, Any] | None = None,
) -> tuple[float, float]:
    """Pick ``(vector_weight, text_weight)`` for a note found by both paths.

    The first matching rule wins:

    | Condition                     | Vector | Text |
    |-------------------------------|-------:|-----:|
    | vector > high                 |   0.80 | 0.20 |
    | text > high                   |   0.30 | 0.70 |
    | vector > medium, text > medium|   0.50 | 0.50 |
    | otherwise                     |   0.70 | 0.30 |
    """
    params = params or get_search_params()
    high = params["high_relevance_threshold"]
    medium = params["medium_relevance_threshold"]

    if vector_score > high:
        return 0.8, 0.2
    if text_score > high:
        return 0.3, 0.7
    if vector_score > medium and text_score > medium:
        return 0.5, 0.5
    return params["default_vector_weight"], params["default_text_weight"]


def combined_score(vector_score: float, text_score: float, params: dict[str, Any] | None = None) -> float:
    """Weighted sum of both path scores using :func:`adaptive_weights`."""
    vector_weight, text_weight = adaptive_weights(vector_score, text_score, params)
    return vector_score * vector_weight + text_score * text_weight


class HybridSearchEngine:
    """Hybrid search combining vector and lexical retrieval.

    Flow for :meth:`search`:

    1. Return the cached result when present.
    2. Run the vector path (embed query, nearest neighbours) and the
       lexical path concurrently; a failing path contributes nothing.
    3. Fuse both candidate sets (:meth:`fuse`), cap to ``limit``.
    4. Cache non-empty results and schedule latency telemetry.

    Args:
        vector_engine: A VectorSearchEngine instance.
        lexical_engine: A LexicalSearchEngine instance.
        embedding_service: Embeds the query for the vector path.
        cache: Shared result cache (None disables caching).
        record_search: Async telemetry callback, run fire-and-forget.
        cache_ttl: TTL in seconds for results written by this engine.
        params: Search parameter overrides (defaults to configured params).
    """

    def __init__(
        self,
        vector_engine: VectorSearchEngine,
        lexical_engine: LexicalSearchEngine,
        embedding_service: EmbeddingService,
        cache: SearchCache | None = None,
        record_search: SearchRecorder | None = None,
        cache_ttl: float = 600.0,
        params: dict[str, Any] | None = None,
    ) -> None:
        self._vector_engine = vector_engine
        self._lexical_engine = lexical_engine
        self._embedding_service = embedding_service
        self._cache = cache
        self._record_search = record_search
        self._cache_ttl = cache_ttl
        self._params = params or get_search_params()
        self._background_tasks: set[asyncio.Task] = set()

    async def search(
        self,
        user_id: int,
        query: str,
        limit: int = 20,
        use_cache: bool = True,
    ) -> SearchResult:
        """Run a hybrid search for one user.

        The cache holds the full fused ranking for the query, independent of
        *limit*; every call slices it to its own *limit*.

        Raises:
            ValueError: If *query* is blank or *limit* is not positive.
            RetrievalFailure: If both retrieval paths failed.
        """
        if not query or not query.strip():
            raise ValueError("Search query must not be empty")
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        started = time.perf_counter()
        cache_key = SearchCache.make_key(user_id, query)

        if use_cache:
            cached = await self._cache_get(cache_key)
            if cached is not None:
                logger.debug("Search cache hit for user %d", user_id)
                return _capped(cached, limit)

        vector_outcome, lexical_outcome = await self._gather_results(user_id, query)

        if vector_outcome.failed and lexical_outcome.failed:
            raise RetrievalFailure(vector_outcome.error, lexical_outcome.error)

        candidate_count = len(vector_outcome.candidates) + len(lexical_outcome.candidates)
        scored = self.fuse(vector_outcome.candidates, lexical_outcome.candidates, candidate_count, self._params)
        ranking = SearchResult(notes=[s.note for s in scored], total_found=len(scored))

        if use_cache and ranking.notes:
            await self._cache_put(cache_key, ranking)
        result = _capped(ranking, limit)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Hybrid search for user %d: %d results in %dms (vector=%d, lexical=%d)",
            user_id,
            len(result.notes),
            duration_ms,
            len(vector_outcome.candidates),
            len(lexical_outcome.candidates),
        )
        self._schedule_telemetry(
            user_id=user_id,
            query=query,
            result_count=len(result.notes),
            duration_ms=duration_ms,
            details={
                "vector_candidates": len(vector_outcome.candidates),
                "lexical_candidates": len(lexical_outcome.candidates),
                "vector_failed": vector_outcome.failed,
                "lexical_failed": lexical_outcome.failed,
            },
        )
        return result

    async def search_lexical_only(self, user_id: int, query: str, limit: int = 20) -> SearchResult:
        """Fallback search without embeddings.

        Over-fetches ``2 * limit`` lexical hits to compensate for the
        missing vector signal and keeps the first *limit*.
        """
        if not query or not query.strip():
            raise ValueError("Search query must not be empty")
        notes = await self._lexical_engine.search(user_id, query, limit=limit * 2)
        notes = notes[:limit]
        return SearchResult(notes=notes, total_found=len(notes))

    async def cleanup_expired_cache(self) -> int:
        """Sweep expired cache entries; returns the number removed."""
        if self._cache is None:
            return 0
        try:
            return await self._cache.cleanup()
        except CacheUnavailable:
            logger.warning("Search cache unavailable during cleanup")
            return 0

    async def drain_background_tasks(self) -> None:
        """Wait for pending telemetry tasks (used on shutdown and in tests)."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    @staticmethod
    def fuse(
        vector_candidates: list[tuple[NoteItem, float]],
        lexical_candidates: list[tuple[NoteItem, float]],
        limit: int,
        params: dict[str, Any] | None = None,
    ) -> list[ScoredNote]:
        """Merge vector and lexical candidates into one ranked list.

        Vector hits seed ``final = similarity * default_vector_weight``.
        Lexical hits either update an existing entry (final recomputed with
        :func:`adaptive_weights`) or seed ``final = text * default_text_weight``.
        Sorted by final score descending, ties by note id; capped to *limit*.
        """
        params = params or get_search_params()
        vector_weight = params["default_vector_weight"]
        text_weight = params["default_text_weight"]

        scored: dict[str, ScoredNote] = {}

        for note, similarity in vector_candidates:
            if note.id in scored:
                continue
            scored[note.id] = ScoredNote(
                note=note,
                vector_score=similarity,
                text_score=0.0,
                final_score=similarity * vector_weight,
            )

        lexical_seen: set[str] = set()
        for note, text_score in lexical_candidates:
            if note.id in lexical_seen:
                continue
            lexical_seen.add(note.id)

            existing = scored.get(note.id)
            if existing is not None:
                existing.text_score = text_score
                existing.final_score = combined_score(existing.vector_score, text_score, params)
            else:
                scored[note.id] = ScoredNote(
                    note=note,
                    vector_score=0.0,
                    text_score=text_score,
                    final_score=text_score * text_weight,
                )

        ranked = sorted(scored.values(), key=lambda s: (-s.final_score, s.note.id))
        return ranked[:limit]

    @staticmethod
    def lexical_scores(notes: list[NoteItem]) -> list[tuple[NoteItem, float]]:
        """Convert a lexical ranking into scores: ``1 - rank / total``."""
        total = len(notes)
        return [(note, 1.0 - rank / total) for rank, note in enumerate(notes)]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _gather_results(self, user_id: int, query: str) -> tuple[RetrievalOutcome, RetrievalOutcome]:
        """Run both retrieval paths concurrently.

        Neither path raises; failures are reported in the outcome.
        Cancelling the caller cancels both paths.
        """
        vector_task = self._vector_path(user_id, query)
        lexical_task = self._lexical_path(user_id, query)
        vector_outcome, lexical_outcome = await asyncio.gather(vector_task, lexical_task)
        return vector_outcome, lexical_outcome

    async def _vector_path(self, user_id: int, query: str) -> RetrievalOutcome:
        try:
            embedding = await self._embedding_service.embed_query(query)
            if not embedding.ok:
                if embedding.status is not EmbeddingStatus.EMPTY:
                    logger.info(
                        "Embedding %s for user %d, using lexical results only: %s",
                        embedding.status.value,
                        user_id,
                        embedding.error,
                    )
                return RetrievalOutcome(path="vector")

            candidates = await self._vector_engine.search(
                user_id,
                embedding.vector,
                limit=self._params["vector_candidate_limit"],
                min_similarity=self._params["min_vector_similarity"],
            )
        except Exception as exc:
            logger.warning("Vector search failed for user %d: %r", user_id, exc)
            return RetrievalOutcome(path="vector", error=exc)
        return RetrievalOutcome(path="vector", candidates=candidates)

    async def _lexical_path(self, user_id: int, query: str) -> RetrievalOutcome:
        try:
            notes = await self._lexical_engine.search(
                user_id,
                query,
                limit=self._params["lexical_candidate_limit"],
            )
        except Exception as exc:
            logger.warning("Lexical search failed for user %d: %r", user_id, exc)
            return RetrievalOutcome(path="lexical", error=exc)
        return RetrievalOutcome(path="lexical", candidates=self.lexical_scores(notes))

    async def _cache_get(self, key: str) -> SearchResult | None:
        if self._cache is None:
            return None
        try:
            return await self._cache.get(key)
        except CacheUnavailable:
            logger.warning("Search cache unavailable, bypassing")
            return None

    async def _cache_put(self, key: str, result: SearchResult) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.put(key, result, ttl=self._cache_ttl)
        except CacheUnavailable:
            logger.warning("Search cache unavailable, result not cached")

    def _schedule_telemetry(self, **event: Any) -> None:
        """Record the search without delaying the response."""
        if self._record_search is None:
            return
        task = asyncio.create_task(self._record_search(search_type="hybrid", **event))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_telemetry_done)

    def _on_telemetry_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Search telemetry failed: %r", task.exception())
