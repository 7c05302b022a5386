# @TEST tests/test_query_service.py

"""Question answering over a user's notes.

Flow for :meth:`QueryService.process_query`:

1. Extract tags and a category from the question.
2. Retrieve notes (cached per user and question):
   filtered vector search, widened to an unfiltered search when it finds
   too little, lexical fallback when there is no embedding or no vector hit,
   then lexical re-ranking down to the top few notes.
3. Pack the notes into a token-bounded context and ask the answer model.
"""

from __future__ import annotations

import logging
from typing import Any

from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.engine import LexicalSearchEngine, VectorSearchEngine
from kbase.search.errors import AnswerGenerationError, CacheUnavailable
from kbase.search.params import get_search_params
from kbase.search.reranker import LexicalReranker
from kbase.search.schemas import NoteItem, QueryResponse
from kbase.services.llm_service import AnswerGenerator
from kbase.services.tag_extraction import TagExtractionService

logger = logging.getLogger(__name__)

NOTHING_FOUND_ANSWER = (
    "Unfortunately, the knowledge base has no information on your question. Try adding relevant notes."
)
ANSWER_UNAVAILABLE = "Sorry, an answer could not be generated right now. Please try again later."

MAX_SOURCES = 3
SOURCE_PREVIEW_CHARS = 100


def source_preview(content: str) -> str:
    """First 100 characters of a note, with ``...`` when cut."""
    if len(content) > SOURCE_PREVIEW_CHARS:
        return content[:SOURCE_PREVIEW_CHARS] + "..."
    return content


def merge_candidates(
    primary: list[tuple[NoteItem, float]],
    secondary: list[tuple[NoteItem, float]],
    limit: int,
) -> list[tuple[NoteItem, float]]:
    """Union of two candidate lists: first occurrence per note, best similarity first."""
    seen: set[str] = set()
    merged: list[tuple[NoteItem, float]] = []
    for note, score in [*primary, *secondary]:
        if note.id in seen:
            continue
        seen.add(note.id)
        merged.append((note, score))
    merged.sort(key=lambda pair: pair[1], reverse=True)
    return merged[:limit]


class QueryService:
    """Answers questions from the notes of a single user."""

    def __init__(
        self,
        vector_engine: VectorSearchEngine,
        lexical_engine: LexicalSearchEngine,
        embedding_service: EmbeddingService,
        answer_generator: AnswerGenerator,
        cache: SearchCache | None = None,
        tag_service: TagExtractionService | None = None,
        reranker: LexicalReranker | None = None,
        params: dict[str, Any] | None = None,
    ) -> None:
        self._vector_engine = vector_engine
        self._lexical_engine = lexical_engine
        self._embedding_service = embedding_service
        self._answer_generator = answer_generator
        self._cache = cache
        self._tag_service = tag_service or TagExtractionService()
        self._params = params or get_search_params()
        self._reranker = reranker or LexicalReranker(min_tail_tokens=self._params["context_min_tail_tokens"])

    async def process_query(self, user_id: int, question: str) -> QueryResponse:
        """Answer *question* from the user's notes.

        Raises:
            ValueError: If *question* is blank.
        """
        if not question or not question.strip():
            raise ValueError("Question must not be empty")

        tags, category = self._tag_service.extract_tags_and_category(question)
        logger.debug("Query tags=%s category=%s", tags, category)

        notes = await self._retrieve(user_id, question, tags, category)
        logger.info("Query for user %d: %d relevant notes", user_id, len(notes))

        context = self._reranker.build_context(notes, question, self._params["context_token_budget"])
        if context:
            try:
                answer = await self._answer_generator.generate_answer(context, question)
            except AnswerGenerationError as exc:
                logger.warning("Answer generation failed for user %d: %s", user_id, exc)
                answer = ANSWER_UNAVAILABLE
        else:
            answer = NOTHING_FOUND_ANSWER

        return QueryResponse(
            answer=answer,
            sources=[source_preview(note.content) for note in notes[:MAX_SOURCES]],
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def _retrieve(
        self,
        user_id: int,
        question: str,
        tags: list[str],
        category: str | None,
    ) -> list[NoteItem]:
        async def compute() -> list[NoteItem]:
            return await self._search_with_filters(user_id, question, tags, category)

        if self._cache is None:
            return await compute()
        try:
            return await self._cache.get_or_compute(user_id, question, compute)
        except CacheUnavailable:
            logger.warning("Search cache unavailable, answering without it")
            return await compute()

    async def _search_with_filters(
        self,
        user_id: int,
        question: str,
        tags: list[str],
        category: str | None,
    ) -> list[NoteItem]:
        embedding = await self._embedding_service.embed_query(question)
        if not embedding.ok:
            logger.info("Embedding %s, falling back to lexical search", embedding.status.value)
            return await self._lexical_fallback(user_id, question)

        candidate_limit = self._params["rerank_candidates"]
        results = await self._vector_engine.search(
            user_id,
            embedding.vector,
            limit=candidate_limit,
            min_similarity=self._params["min_vector_similarity"],
            tags=tags or None,
            category=category,
        )

        if len(results) < self._params["filter_min_results"]:
            logger.debug("Only %d filtered results, widening the search", len(results))
            unfiltered = await self._vector_engine.search(
                user_id,
                embedding.vector,
                limit=candidate_limit,
                min_similarity=self._params["expanded_min_similarity"],
            )
            results = merge_candidates(results, unfiltered, candidate_limit)

        if not results:
            logger.info("No vector results, falling back to lexical search")
            return await self._lexical_fallback(user_id, question)

        return self._reranker.rerank(results, question, top_n=self._params["rerank_top_n"])

    async def _lexical_fallback(self, user_id: int, question: str) -> list[NoteItem]:
        return await self._lexical_engine.search(user_id, question, limit=self._params["fallback_results"])
