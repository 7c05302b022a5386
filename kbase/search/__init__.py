"""Search package: hybrid vector + lexical retrieval, re-ranking, caching and embedding backfill."""

from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.engine import (
    HybridSearchEngine,
    LexicalSearchEngine,
    ScoredNote,
    VectorSearchEngine,
)
from kbase.search.errors import (
    BatchItemFailure,
    CacheUnavailable,
    EmbeddingError,
    EmbeddingUnavailable,
    RetrievalFailure,
)
from kbase.search.indexer import BackfillReport, NoteIndexer
from kbase.search.reranker import LexicalReranker
from kbase.search.schemas import EmbeddingOutcome, NoteItem, SearchResult

__all__ = [
    "BackfillReport",
    "BatchItemFailure",
    "CacheUnavailable",
    "EmbeddingError",
    "EmbeddingOutcome",
    "EmbeddingService",
    "EmbeddingUnavailable",
    "HybridSearchEngine",
    "LexicalReranker",
    "LexicalSearchEngine",
    "NoteIndexer",
    "NoteItem",
    "RetrievalFailure",
    "ScoredNote",
    "SearchCache",
    "SearchResult",
    "VectorSearchEngine",
]
