# @TEST tests/test_embeddings.py

"""Tests for the EmbeddingService.

All OpenAI and local HTTP calls are mocked. Tests cover:
1. Outcome reporting for the query path (ok / empty / unavailable / failed)
2. Batch embedding and input limits
3. Response validation (count, dimensions)
4. Local HTTP mode
5. Token truncation
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from kbase.search.embeddings import MAX_BATCH_INPUTS, MAX_INPUT_TOKENS, EmbeddingService
from kbase.search.errors import EmbeddingError, EmbeddingUnavailable
from kbase.search.schemas import EmbeddingStatus

DIMS = 3

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class _FakeEncoding:
    """Whitespace tokenizer standing in for tiktoken."""

    def encode(self, text: str) -> list[str]:
        return text.split()

    def decode(self, tokens: list[str]) -> str:
        return " ".join(tokens)


@pytest.fixture
def embedding_service() -> EmbeddingService:
    """EmbeddingService in OpenAI mode with a mocked client."""
    with patch("kbase.search.embeddings.tiktoken.encoding_for_model", return_value=_FakeEncoding()):
        service = EmbeddingService(api_key="test-api-key-fake", dimensions=DIMS)
    service._client = MagicMock()
    service._client.embeddings.create = AsyncMock()
    return service


def _make_openai_response(embeddings: list[list[float]], reverse: bool = False):
    """Build a fake OpenAI embeddings.create() response object."""
    data = []
    for idx, emb in enumerate(embeddings):
        item = MagicMock()
        item.embedding = emb
        item.index = idx
        data.append(item)
    if reverse:
        data.reverse()
    response = MagicMock()
    response.data = data
    return response


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.openai.com/v1/embeddings")


# ---------------------------------------------------------------------------
# Query path outcomes
# ---------------------------------------------------------------------------


class TestEmbedQuery:
    @pytest.mark.asyncio
    async def test_success(self, embedding_service):
        embedding_service._client.embeddings.create.return_value = _make_openai_response([[0.1, 0.2, 0.3]])

        outcome = await embedding_service.embed_query("hello")

        assert outcome.ok
        assert outcome.vector == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   "])
    async def test_blank_text_is_empty(self, embedding_service, text):
        outcome = await embedding_service.embed_query(text)

        assert outcome.status is EmbeddingStatus.EMPTY
        embedding_service._client.embeddings.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_is_unavailable(self):
        service = EmbeddingService()

        outcome = await service.embed_query("hello")

        assert not service.is_available
        assert outcome.status is EmbeddingStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable(self, embedding_service):
        embedding_service._client.embeddings.create.side_effect = openai.APIConnectionError(request=_request())

        outcome = await embedding_service.embed_query("hello")

        assert outcome.status is EmbeddingStatus.UNAVAILABLE
        assert outcome.vector is None

    @pytest.mark.asyncio
    async def test_api_error_is_failed(self, embedding_service):
        embedding_service._client.embeddings.create.side_effect = openai.APIError(
            "invalid input", request=_request(), body=None
        )

        outcome = await embedding_service.embed_query("hello")

        assert outcome.status is EmbeddingStatus.FAILED
        assert "invalid input" in outcome.error

    @pytest.mark.asyncio
    async def test_wrong_dimensions_is_failed(self, embedding_service):
        embedding_service._client.embeddings.create.return_value = _make_openai_response([[0.1, 0.2]])

        outcome = await embedding_service.embed_query("hello")

        assert outcome.status is EmbeddingStatus.FAILED


# ---------------------------------------------------------------------------
# Raising API
# ---------------------------------------------------------------------------


class TestEmbedText:
    @pytest.mark.asyncio
    async def test_empty_returns_empty_list(self, embedding_service):
        assert await embedding_service.embed_text("") == []

    @pytest.mark.asyncio
    async def test_unconfigured_raises_unavailable(self):
        with pytest.raises(EmbeddingUnavailable):
            await EmbeddingService().embed_text("hello")

    @pytest.mark.asyncio
    async def test_api_error_raises(self, embedding_service):
        embedding_service._client.embeddings.create.side_effect = openai.APIError(
            "boom", request=_request(), body=None
        )
        with pytest.raises(EmbeddingError):
            await embedding_service.embed_text("hello")


class TestEmbedTexts:
    @pytest.mark.asyncio
    async def test_batch_sorted_by_index(self, embedding_service):
        vectors = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        embedding_service._client.embeddings.create.return_value = _make_openai_response(vectors, reverse=True)

        result = await embedding_service.embed_texts(["a", "b"])

        assert result == vectors
        kwargs = embedding_service._client.embeddings.create.await_args.kwargs
        assert kwargs["input"] == ["a", "b"]
        assert kwargs["dimensions"] == DIMS

    @pytest.mark.asyncio
    async def test_empty_batch(self, embedding_service):
        assert await embedding_service.embed_texts([]) == []
        embedding_service._client.embeddings.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_too_many_inputs(self, embedding_service):
        with pytest.raises(ValueError):
            await embedding_service.embed_texts(["x"] * (MAX_BATCH_INPUTS + 1))

    @pytest.mark.asyncio
    async def test_count_mismatch_raises(self, embedding_service):
        embedding_service._client.embeddings.create.return_value = _make_openai_response([[0.1, 0.2, 0.3]])
        with pytest.raises(EmbeddingError):
            await embedding_service.embed_texts(["a", "b"])


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


class TestTruncation:
    def test_long_text_truncated(self, embedding_service):
        text = "word " * (MAX_INPUT_TOKENS + 10)
        truncated = embedding_service.truncate_text(text)
        assert len(truncated.split()) == MAX_INPUT_TOKENS

    def test_short_text_unchanged(self, embedding_service):
        assert embedding_service.truncate_text("short text") == "short text"

    def test_local_mode_does_not_truncate(self):
        service = EmbeddingService(local_url="http://embed:8080")
        text = "word " * (MAX_INPUT_TOKENS + 10)
        assert service.truncate_text(text) == text


# ---------------------------------------------------------------------------
# Local HTTP mode
# ---------------------------------------------------------------------------


def _patch_local_client(post: AsyncMock):
    patcher = patch("kbase.search.embeddings.httpx.AsyncClient")
    client_cls = patcher.start()
    client = MagicMock()
    client.post = post
    client_cls.return_value.__aenter__.return_value = client
    return patcher


class TestLocalMode:
    @pytest.mark.asyncio
    async def test_local_embedding(self):
        service = EmbeddingService(local_url="http://embed:8080", dimensions=DIMS)
        response = httpx.Response(
            200,
            json={"embeddings": [[0.5, 0.5, 0.5]]},
            request=httpx.Request("POST", "http://embed:8080/embed"),
        )
        post = AsyncMock(return_value=response)
        patcher = _patch_local_client(post)
        try:
            outcome = await service.embed_query("hello")
        finally:
            patcher.stop()

        assert outcome.vector == [0.5, 0.5, 0.5]
        post.assert_awaited_once_with(
            "http://embed:8080/embed",
            json={"input": ["hello"], "dimensions": DIMS},
        )

    @pytest.mark.asyncio
    async def test_local_unreachable(self):
        service = EmbeddingService(local_url="http://embed:8080", dimensions=DIMS)
        patcher = _patch_local_client(AsyncMock(side_effect=httpx.ConnectError("refused")))
        try:
            outcome = await service.embed_query("hello")
        finally:
            patcher.stop()

        assert outcome.status is EmbeddingStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_local_http_error(self):
        service = EmbeddingService(local_url="http://embed:8080", dimensions=DIMS)
        response = httpx.Response(500, request=httpx.Request("POST", "http://embed:8080/embed"))
        patcher = _patch_local_client(AsyncMock(return_value=response))
        try:
            outcome = await service.embed_query("hello")
        finally:
            patcher.stop()

        assert outcome.status is EmbeddingStatus.FAILED

    @pytest.mark.asyncio
    async def test_local_malformed_response(self):
        service = EmbeddingService(local_url="http://embed:8080", dimensions=DIMS)
        response = httpx.Response(
            200, json={"vectors": []}, request=httpx.Request("POST", "http://embed:8080/embed")
        )
        patcher = _patch_local_client(AsyncMock(return_value=response))
        try:
            outcome = await service.embed_query("hello")
        finally:
            patcher.stop()

        assert outcome.status is EmbeddingStatus.FAILED


class TestFromSettings:
    def test_local_url_takes_precedence(self):
        settings = MagicMock(
            OPENAI_API_KEY="",
            EMBEDDING_MODEL="text-embedding-3-small",
            EMBEDDING_DIMENSION=DIMS,
            EMBEDDING_SERVICE_URL="http://embed:8080",
            EMBEDDING_TIMEOUT_SECONDS=5.0,
        )
        service = EmbeddingService.from_settings(settings)
        assert service.is_available
        assert service.dimensions == DIMS
