# @TEST tests/test_query_service.py

"""Tests for QueryService (question answering) and AnswerGenerator.

Retrieval engines, the embedding provider and the chat model are mocked.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from kbase.search.cache import SearchCache
from kbase.search.errors import AnswerGenerationError
from kbase.search.params import DEFAULT_SEARCH_PARAMS
from kbase.search.schemas import EmbeddingOutcome, NoteItem
from kbase.services.llm_service import AnswerGenerator
from kbase.services.query_service import (
    ANSWER_UNAVAILABLE,
    NOTHING_FOUND_ANSWER,
    QueryService,
    merge_candidates,
    source_preview,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _note(note_id: str, content: str = "content") -> NoteItem:
    return NoteItem(id=note_id, user_id=1, content=content)


def _make_service(
    vector_results=None,
    lexical_results=None,
    outcome: EmbeddingOutcome | None = None,
    answer: str = "generated answer",
    answer_error: Exception | None = None,
    tags=None,
    category=None,
    cache=None,
):
    vector = AsyncMock()
    if isinstance(vector_results, list) and vector_results and isinstance(vector_results[0], list):
        vector.search = AsyncMock(side_effect=vector_results)
    else:
        vector.search = AsyncMock(return_value=vector_results or [])

    lexical = AsyncMock()
    lexical.search = AsyncMock(return_value=lexical_results or [])

    embedding = AsyncMock()
    embedding.embed_query = AsyncMock(return_value=outcome or EmbeddingOutcome.success([0.1, 0.2, 0.3]))

    generator = AsyncMock()
    if answer_error is not None:
        generator.generate_answer = AsyncMock(side_effect=answer_error)
    else:
        generator.generate_answer = AsyncMock(return_value=answer)

    tag_service = MagicMock()
    tag_service.extract_tags_and_category.return_value = (tags or [], category)

    service = QueryService(
        vector_engine=vector,
        lexical_engine=lexical,
        embedding_service=embedding,
        answer_generator=generator,
        cache=cache,
        tag_service=tag_service,
        params=dict(DEFAULT_SEARCH_PARAMS),
    )
    return service, vector, lexical, embedding, generator


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestSourcePreview:
    def test_short_content_unchanged(self):
        assert source_preview("short note") == "short note"

    def test_long_content_cut_with_ellipsis(self):
        preview = source_preview("x" * 150)
        assert preview == "x" * 100 + "..."

    def test_exactly_one_hundred_chars_unchanged(self):
        assert source_preview("y" * 100) == "y" * 100


class TestMergeCandidates:
    def test_first_occurrence_wins_and_sorted(self):
        a, b, c = _note("a"), _note("b"), _note("c")
        merged = merge_candidates([(a, 0.4), (b, 0.9)], [(a, 0.95), (c, 0.5)], limit=10)
        assert [(n.id, s) for n, s in merged] == [("b", 0.9), ("c", 0.5), ("a", 0.4)]

    def test_limit_applied(self):
        notes = [(_note(str(i)), i / 10) for i in range(5)]
        assert len(merge_candidates(notes, [], limit=2)) == 2


# ---------------------------------------------------------------------------
# process_query
# ---------------------------------------------------------------------------


class TestProcessQuery:
    @pytest.mark.asyncio
    async def test_blank_question_rejected(self):
        service, *_ = _make_service()
        with pytest.raises(ValueError):
            await service.process_query(1, "   ")

    @pytest.mark.asyncio
    async def test_answer_with_sources(self):
        notes = [(_note(str(i), f"budget note {i}"), 0.9 - i / 10) for i in range(4)]
        service, _, _, _, generator = _make_service(vector_results=notes)

        response = await service.process_query(1, "budget")

        assert response.answer == "generated answer"
        assert len(response.sources) == 3
        context, question = generator.generate_answer.await_args.args
        assert question == "budget"
        assert "- budget note" in context

    @pytest.mark.asyncio
    async def test_filters_passed_to_vector_search(self):
        notes = [(_note(str(i), f"meeting {i}"), 0.9) for i in range(3)]
        service, vector, *_ = _make_service(vector_results=notes, tags=["work"], category="work")

        await service.process_query(7, "project meeting")

        kwargs = vector.search.await_args_list[0].kwargs
        assert kwargs["tags"] == ["work"]
        assert kwargs["category"] == "work"
        assert kwargs["min_similarity"] == 0.2
        assert kwargs["limit"] == 50
        assert vector.search.await_count == 1

    @pytest.mark.asyncio
    async def test_no_tags_means_no_tag_filter(self):
        notes = [(_note(str(i)), 0.9) for i in range(3)]
        service, vector, *_ = _make_service(vector_results=notes)

        await service.process_query(1, "anything")

        assert vector.search.await_args_list[0].kwargs["tags"] is None

    @pytest.mark.asyncio
    async def test_widens_search_when_filtered_results_are_few(self):
        filtered = [(_note("a", "alpha"), 0.6)]
        unfiltered = [(_note("a", "alpha"), 0.6), (_note("b", "beta"), 0.7)]
        service, vector, *_ = _make_service(vector_results=[filtered, unfiltered], tags=["work"], category="work")

        response = await service.process_query(1, "alpha")

        assert vector.search.await_count == 2
        widened = vector.search.await_args_list[1].kwargs
        assert widened["min_similarity"] == 0.3
        assert "tags" not in widened
        assert len(response.sources) == 2

    @pytest.mark.asyncio
    async def test_lexical_fallback_when_embedding_unavailable(self):
        lexical_notes = [_note("l1", "lexical hit")]
        service, vector, lexical, *_ = _make_service(
            lexical_results=lexical_notes,
            outcome=EmbeddingOutcome.unavailable("no key"),
        )

        response = await service.process_query(1, "lexical")

        vector.search.assert_not_awaited()
        assert lexical.search.await_args.kwargs["limit"] == 10
        assert response.sources == ["lexical hit"]

    @pytest.mark.asyncio
    async def test_lexical_fallback_when_no_vector_results(self):
        service, vector, lexical, *_ = _make_service(lexical_results=[_note("l1", "found by text")])

        response = await service.process_query(1, "text")

        assert vector.search.await_count == 2
        lexical.search.assert_awaited_once()
        assert response.sources == ["found by text"]

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        service, _, _, _, generator = _make_service()

        response = await service.process_query(1, "unknown topic")

        assert response.answer == NOTHING_FOUND_ANSWER
        assert response.sources == []
        generator.generate_answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_answer_failure_returns_apology(self):
        notes = [(_note(str(i), "some text"), 0.9) for i in range(3)]
        service, *_ = _make_service(vector_results=notes, answer_error=AnswerGenerationError("down"))

        response = await service.process_query(1, "text")

        assert response.answer == ANSWER_UNAVAILABLE
        assert len(response.sources) == 3

    @pytest.mark.asyncio
    async def test_rerank_keeps_top_five(self):
        notes = [(_note(str(i), f"note {i}"), 0.5) for i in range(20)]
        service, *_ = _make_service(vector_results=notes)

        notes_found = await service._search_with_filters(1, "note", [], None)

        assert len(notes_found) == 5

    @pytest.mark.asyncio
    async def test_cache_avoids_second_search(self):
        notes = [(_note(str(i), "cached text"), 0.9) for i in range(3)]
        cache = SearchCache()
        service, vector, *_ = _make_service(vector_results=notes, cache=cache)

        await service.process_query(1, "Cached")
        await service.process_query(1, "  cached ")

        assert vector.search.await_count == 1

    @pytest.mark.asyncio
    async def test_closed_cache_is_bypassed(self):
        notes = [(_note(str(i), "text"), 0.9) for i in range(3)]
        cache = SearchCache()
        await cache.close()
        service, vector, *_ = _make_service(vector_results=notes, cache=cache)

        response = await service.process_query(1, "text")

        assert response.answer == "generated answer"
        vector.search.assert_awaited()


# ---------------------------------------------------------------------------
# AnswerGenerator
# ---------------------------------------------------------------------------


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestAnswerGenerator:
    @pytest.mark.asyncio
    async def test_without_key_raises(self):
        with pytest.raises(AnswerGenerationError):
            await AnswerGenerator(api_key="").generate_answer("ctx", "q")

    @pytest.mark.asyncio
    async def test_returns_model_content(self):
        generator = AnswerGenerator(api_key="sk-test", model="gpt-4o-mini")
        generator._client = MagicMock()
        generator._client.chat.completions.create = AsyncMock(return_value=_completion("42"))

        answer = await generator.generate_answer("- the answer is 42", "What is the answer?")

        assert answer == "42"
        kwargs = generator._client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert "- the answer is 42" in kwargs["messages"][1]["content"]
        assert "What is the answer?" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        generator = AnswerGenerator(api_key="sk-test")
        generator._client = MagicMock()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        generator._client.chat.completions.create = AsyncMock(side_effect=openai.APIConnectionError(request=request))

        with pytest.raises(AnswerGenerationError):
            await generator.generate_answer("ctx", "q")

    @pytest.mark.asyncio
    async def test_empty_content_raises(self):
        generator = AnswerGenerator(api_key="sk-test")
        generator._client = MagicMock()
        generator._client.chat.completions.create = AsyncMock(return_value=_completion(""))

        with pytest.raises(AnswerGenerationError):
            await generator.generate_answer("ctx", "q")
