"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text

from kbase.config import get_settings
from kbase.database import engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan: startup and shutdown events."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Startup: create the pgvector extension and all tables if missing
    from kbase import models  # noqa: F401 - Import models to register them with Base
    from kbase.database import Base

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

    from kbase.search.cache import SearchCache
    from kbase.search.embeddings import EmbeddingService
    from kbase.services.llm_service import AnswerGenerator
    from kbase.tasks.backfill import periodic_cache_cleanup

    cache = SearchCache.from_settings(settings)
    app.state.search_cache = cache
    app.state.embedding_service = EmbeddingService.from_settings(settings)
    app.state.answer_generator = AnswerGenerator.from_settings(settings)
    cleanup_task = asyncio.create_task(periodic_cache_cleanup(cache, settings.CACHE_CLEANUP_INTERVAL_SECONDS))

    yield

    # Shutdown: stop the cleanup loop, close the cache, dispose the pool
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await cache.close()
    await engine.dispose()


app = FastAPI(
    title="kbase",
    description="Personal knowledge base with hybrid retrieval",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Router includes ---
from kbase.api.notes import router as notes_router  # noqa: E402
from kbase.api.search import router as search_router  # noqa: E402

app.include_router(notes_router, prefix="/api")
app.include_router(search_router, prefix="/api")


@app.get("/api/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns a simple status response to verify the API is running.
    """
    return {"status": "ok"}
