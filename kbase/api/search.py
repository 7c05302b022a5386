# @TEST tests/test_api_search.py

"""Search API endpoints.

Provides:
- ``GET /search`` -- Hybrid (vector + lexical) search over a user's notes.
- ``POST /query`` -- Answer a question from the user's notes.
- ``POST /search/backfill`` -- Embed notes that have no embedding (background).
- ``GET /search/backfill/status`` -- State of the last backfill run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from kbase.api.deps import get_answer_generator, get_embedding_service, get_search_cache
from kbase.config import get_settings
from kbase.database import SessionFactory, get_session_factory
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.engine import HybridSearchEngine, LexicalSearchEngine, VectorSearchEngine
from kbase.search.errors import RetrievalFailure
from kbase.search.schemas import QueryResponse, SearchResult
from kbase.services.llm_service import AnswerGenerator
from kbase.services.query_service import QueryService
from kbase.services.search_metrics import SearchMetrics
from kbase.tasks.backfill import run_backfill_task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["search"])


class QueryRequest(BaseModel):
    user_id: int
    question: str = Field(..., min_length=1)


class BackfillRequest(BaseModel):
    user_id: int | None = None
    batch_size: int = Field(100, ge=1, le=1000)


class BackfillTriggerResponse(BaseModel):
    status: str
    message: str


class BackfillStatusResponse(BaseModel):
    status: str
    processed: int
    failed: int
    stopped_early: bool
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Engine factory helpers (extracted for easy mocking in tests)
# ---------------------------------------------------------------------------


def _build_hybrid_engine(
    session_factory: SessionFactory,
    embedding_service: EmbeddingService,
    cache: SearchCache | None,
) -> HybridSearchEngine:
    settings = get_settings()
    return HybridSearchEngine(
        vector_engine=VectorSearchEngine(session_factory),
        lexical_engine=LexicalSearchEngine(session_factory),
        embedding_service=embedding_service,
        cache=cache,
        record_search=SearchMetrics.record_search,
        cache_ttl=settings.HYBRID_CACHE_TTL_SECONDS,
    )


def _build_query_service(
    session_factory: SessionFactory,
    embedding_service: EmbeddingService,
    answer_generator: AnswerGenerator,
    cache: SearchCache | None,
) -> QueryService:
    return QueryService(
        vector_engine=VectorSearchEngine(session_factory),
        lexical_engine=LexicalSearchEngine(session_factory),
        embedding_service=embedding_service,
        answer_generator=answer_generator,
        cache=cache,
    )


# ---------------------------------------------------------------------------
# Search & query
# ---------------------------------------------------------------------------


@router.get("/search", response_model=SearchResult)
async def search(
    user_id: int = Query(..., description="Owner of the notes to search"),  # noqa: B008
    q: str = Query(..., min_length=1, description="Search query"),  # noqa: B008
    limit: int = Query(20, ge=1, le=100, description="Maximum number of results"),  # noqa: B008
    use_cache: bool = Query(True, description="Serve and store cached results"),  # noqa: B008
    session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
    cache: SearchCache | None = Depends(get_search_cache),  # noqa: B008
    embedding_service: EmbeddingService = Depends(get_embedding_service),  # noqa: B008
) -> SearchResult:
    """Hybrid search over the notes of one user.

    Returns 422 for a blank query and 503 when both retrieval paths fail.
    """
    logger.info("Search request: user=%d, query=%r, limit=%d", user_id, q, limit)
    engine = _build_hybrid_engine(session_factory, embedding_service, cache)
    try:
        return await engine.search(user_id, q, limit=limit, use_cache=use_cache)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RetrievalFailure as exc:
        logger.error("Search unavailable for user %d: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Search is unavailable") from exc


@router.post("/query", response_model=QueryResponse)
async def query(
    request: QueryRequest,
    session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
    cache: SearchCache | None = Depends(get_search_cache),  # noqa: B008
    embedding_service: EmbeddingService = Depends(get_embedding_service),  # noqa: B008
    answer_generator: AnswerGenerator = Depends(get_answer_generator),  # noqa: B008
) -> QueryResponse:
    """Answer a question from the user's notes."""
    service = _build_query_service(session_factory, embedding_service, answer_generator, cache)
    try:
        return await service.process_query(request.user_id, request.question)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Embedding backfill
# ---------------------------------------------------------------------------


@dataclass
class BackfillState:
    status: str = "idle"
    is_running: bool = False
    processed: int = 0
    failed: int = 0
    stopped_early: bool = False
    error_message: str | None = None


_backfill_state = BackfillState()


async def _run_backfill_background(
    state: BackfillState,
    embedding_service: EmbeddingService,
    user_id: int | None,
    batch_size: int,
) -> None:
    state.status = "running"
    state.is_running = True
    state.processed = 0
    state.failed = 0
    state.stopped_early = False
    state.error_message = None

    try:
        report = await run_backfill_task(
            embedding_service,
            user_id=user_id,
            batch_size=batch_size,
            batch_delay=get_settings().BACKFILL_BATCH_DELAY_SECONDS,
        )
        if report is None:
            state.status = "error"
            state.error_message = "Backfill crashed, see server logs"
            return
        state.processed = report.processed
        state.failed = len(report.failures)
        state.stopped_early = report.stopped_early
        state.status = "interrupted" if report.stopped_early else "completed"
    finally:
        state.is_running = False


@router.post(
    "/search/backfill",
    response_model=BackfillTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_backfill(
    request: BackfillRequest,
    background_tasks: BackgroundTasks,
    embedding_service: EmbeddingService = Depends(get_embedding_service),  # noqa: B008
) -> BackfillTriggerResponse:
    """Start embedding notes that have none, in the background."""
    if _backfill_state.is_running:
        return BackfillTriggerResponse(status="already_running", message="A backfill is already running")

    if not embedding_service.is_available:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Embedding provider is not configured",
        )

    _backfill_state.is_running = True
    background_tasks.add_task(
        _run_backfill_background,
        _backfill_state,
        embedding_service,
        request.user_id,
        request.batch_size,
    )
    return BackfillTriggerResponse(status="started", message="Backfill started")


@router.get("/search/backfill/status", response_model=BackfillStatusResponse)
async def backfill_status() -> BackfillStatusResponse:
    return BackfillStatusResponse(
        status=_backfill_state.status,
        processed=_backfill_state.processed,
        failed=_backfill_state.failed,
        stopped_early=_backfill_state.stopped_early,
        error_message=_backfill_state.error_message,
    )
