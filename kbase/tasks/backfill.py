# @TEST tests/test_indexer.py

"""Background jobs: embedding backfill and periodic cache cleanup."""

from __future__ import annotations

import asyncio
import logging

from kbase.database import SessionFactory, async_session_factory
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.errors import CacheUnavailable
from kbase.search.indexer import BackfillReport, NoteIndexer

logger = logging.getLogger(__name__)


async def run_backfill_task(
    embedding_service: EmbeddingService,
    user_id: int | None = None,
    batch_size: int = 100,
    batch_delay: float = 0.1,
    session_factory: SessionFactory = async_session_factory,
) -> BackfillReport | None:
    """Run one backfill with its own session; never raises.

    Returns the report, or None when the run crashed.
    """
    try:
        async with session_factory() as session:
            indexer = NoteIndexer(session, embedding_service, batch_delay=batch_delay)
            return await indexer.run_backfill(user_id, batch_size)
    except Exception:
        logger.exception("Embedding backfill failed (user=%s)", user_id)
        return None


async def periodic_cache_cleanup(cache: SearchCache, interval: float) -> None:
    """Sweep expired cache entries every *interval* seconds until cancelled or the cache closes."""
    while True:
        await asyncio.sleep(interval)
        try:
            await cache.cleanup()
        except CacheUnavailable:
            logger.info("Search cache closed, stopping cleanup loop")
            return
