# @TEST tests/test_embeddings.py

"""Embedding service for converting note text into vector embeddings.

Uses the OpenAI embeddings API (text-embedding-3-small by default)
to generate 1536-dimensional vectors suitable for pgvector storage
and cosine similarity search.
"""

import logging

import httpx
import tiktoken
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI

from kbase.search.errors import EmbeddingError, EmbeddingUnavailable
from kbase.search.schemas import EmbeddingOutcome

logger = logging.getLogger(__name__)

# Token limit shared by the text-embedding-3 and ada-002 models
MAX_INPUT_TOKENS = 8191
# Inputs accepted by a single embeddings request
MAX_BATCH_INPUTS = 2048


class EmbeddingService:
    """Generate vector embeddings for text.

    Supports three modes:

    * **OpenAI API mode** -- uses the OpenAI embeddings endpoint.
    * **Local HTTP mode** -- when ``local_url`` is set, all requests are
      forwarded to a local embedding service instead.
    * **Unconfigured** -- neither an API key nor a local URL is set; every
      call reports the provider as unavailable.

    Parameters
    ----------
    api_key : str
        OpenAI API key.  Ignored when running in local mode.
    model : str
        Embedding model name (default: ``text-embedding-3-small``).
    dimensions : int
        Output vector dimensions (default: 1536).
    local_url : str | None
        Base URL of a local embedding service.
    timeout : float
        Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        local_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._timeout = timeout
        self._local_url: str | None = local_url or None
        self._client: AsyncOpenAI | None = None
        self._encoding = None

        if self._local_url:
            logger.info("EmbeddingService: local mode enabled (%s)", self._local_url)
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, timeout=timeout)
            self._encoding = tiktoken.encoding_for_model(model)
        else:
            logger.warning("EmbeddingService: no API key or local URL configured, embeddings disabled")

    @classmethod
    def from_settings(cls, settings) -> "EmbeddingService":
        """Build a service from :class:`kbase.config.Settings`."""
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimensions=settings.EMBEDDING_DIMENSION,
            local_url=settings.EMBEDDING_SERVICE_URL or None,
            timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        )

    @property
    def is_available(self) -> bool:
        """Whether a provider is configured at all."""
        return bool(self._local_url or self._client is not None)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_query(self, text: str) -> EmbeddingOutcome:
        """Embed *text*, reporting the outcome instead of raising.

        Used on the search path, where an unavailable provider is an
        expected branch rather than an error.
        """
        if not text or not text.strip():
            return EmbeddingOutcome.empty()

        try:
            vector = await self.embed_text(text)
        except EmbeddingUnavailable as exc:
            return EmbeddingOutcome.unavailable(str(exc))
        except EmbeddingError as exc:
            return EmbeddingOutcome.failed(str(exc))
        return EmbeddingOutcome.success(vector)

    async def embed_text(self, text: str) -> list[float]:
        """Embed a single text string.

        Returns an empty list when *text* is empty or whitespace-only.

        Raises
        ------
        EmbeddingUnavailable
            If no provider is configured or it cannot be reached.
        EmbeddingError
            If the provider call fails.
        """
        if not text or not text.strip():
            return []

        result = await self._call_api([text])
        return result[0]

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts in a single API call (batch).

        Returns an empty list when *texts* is empty. At most
        ``MAX_BATCH_INPUTS`` texts are accepted per call.

        Raises
        ------
        ValueError
            If more than ``MAX_BATCH_INPUTS`` texts are passed.
        EmbeddingUnavailable
            If no provider is configured or it cannot be reached.
        EmbeddingError
            If the provider call fails.
        """
        if not texts:
            return []
        if len(texts) > MAX_BATCH_INPUTS:
            raise ValueError(f"At most {MAX_BATCH_INPUTS} texts per embedding request, got {len(texts)}")

        return await self._call_api(texts)

    def truncate_text(self, text: str) -> str:
        """Cut *text* to the model's input token limit.

        Without a tokenizer (local mode) the text is returned unchanged.
        """
        if self._encoding is None:
            return text
        tokens = self._encoding.encode(text)
        if len(tokens) <= MAX_INPUT_TOKENS:
            return text
        return self._encoding.decode(tokens[:MAX_INPUT_TOKENS])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call_api(self, texts: list[str]) -> list[list[float]]:
        """Dispatch to the configured backend and validate dimensions."""
        if self._local_url:
            vectors = await self._call_local_api(texts)
        elif self._client is not None:
            vectors = await self._call_openai_api([self.truncate_text(t) for t in texts])
        else:
            raise EmbeddingUnavailable("Embedding provider is not configured")

        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingError(f"Expected {self._dimensions}-dimensional embedding, got {len(vector)}")
        return vectors

    async def _call_openai_api(self, texts: list[str]) -> list[list[float]]:
        """Call the OpenAI embeddings API.

        Raises
        ------
        EmbeddingUnavailable
            On connection failures and timeouts.
        EmbeddingError
            Wraps any other ``openai.APIError``.
        """
        try:
            response = await self._client.embeddings.create(
                input=texts,
                model=self._model,
                dimensions=self._dimensions,
            )
        except (APIConnectionError, APITimeoutError) as exc:
            logger.warning("Embedding API unreachable: %s", exc)
            raise EmbeddingUnavailable(str(exc)) from exc
        except APIError as exc:
            logger.error("Embedding API error: %s", exc)
            raise EmbeddingError(str(exc)) from exc

        # The response data is ordered by index; sort to be safe.
        sorted_data = sorted(response.data, key=lambda d: d.index)
        return [item.embedding for item in sorted_data]

    async def _call_local_api(self, texts: list[str]) -> list[list[float]]:
        """Call a local HTTP embedding service.

        Expects the service to expose a ``POST /embed`` endpoint that
        accepts ``{"input": [...], "dimensions": N}`` and returns
        ``{"embeddings": [[...], ...]}``.
        """
        url = f"{self._local_url}/embed"
        payload = {"input": texts, "dimensions": self._dimensions}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                data = response.json()
                return data["embeddings"]
        except httpx.HTTPStatusError as exc:
            logger.error("Local embedding HTTP error: %s", exc)
            raise EmbeddingError(str(exc)) from exc
        except httpx.RequestError as exc:
            logger.warning("Local embedding service unreachable: %s", exc)
            raise EmbeddingUnavailable(str(exc)) from exc
        except (KeyError, ValueError) as exc:
            logger.error("Local embedding response parse error: %s", exc)
            raise EmbeddingError(f"Unexpected response from local embedding service: {exc}") from exc
