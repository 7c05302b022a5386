"""Error taxonomy for retrieval, caching and embedding backfill."""

from __future__ import annotations


class SearchError(Exception):
    """Base class for knowledge-base search errors."""


class EmbeddingError(SearchError):
    """Raised when an embedding API call fails."""


class EmbeddingUnavailable(EmbeddingError):
    """The embedding provider is unconfigured or cannot be reached."""


class RetrievalFailure(SearchError):
    """Both the vector and the lexical retrieval paths failed.

    Attributes:
        vector_error: Exception raised by the vector path.
        lexical_error: Exception raised by the lexical path.
    """

    def __init__(self, vector_error: Exception | None, lexical_error: Exception | None) -> None:
        self.vector_error = vector_error
        self.lexical_error = lexical_error
        super().__init__(f"All retrieval paths failed (vector: {vector_error!r}, lexical: {lexical_error!r})")


class CacheUnavailable(SearchError):
    """The result cache cannot be used (for example after shutdown)."""


class BatchItemFailure(SearchError):
    """A single note could not be embedded during backfill.

    Collected into the backfill report and skipped, never raised out of a run.
    """

    def __init__(self, note_id: str, reason: str) -> None:
        self.note_id = note_id
        self.reason = reason
        super().__init__(f"Note {note_id}: {reason}")


class AnswerGenerationError(Exception):
    """The answer-generation provider failed."""
