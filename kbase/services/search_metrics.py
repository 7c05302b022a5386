# @TEST tests/test_search_metrics.py

"""Search telemetry.

Every executed hybrid search is stored as a ``search_events`` row so that
latency and zero-result rates can be read back from the database. The
search engine schedules :meth:`SearchMetrics.record_search` as a
background task, so recording must never fail a search.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from kbase.database import SessionFactory, async_session_factory
from kbase.models import SearchEvent

logger = logging.getLogger(__name__)

# Searches slower than this are logged as warnings
SLOW_SEARCH_MS = 1000


class SearchMetrics:
    """Writes search telemetry rows."""

    @staticmethod
    async def record_search(
        query: str,
        search_type: str,
        result_count: int,
        duration_ms: int | None = None,
        user_id: int | None = None,
        details: dict[str, Any] | None = None,
        session_factory: SessionFactory = async_session_factory,
    ) -> int | None:
        """Store one search event on its own session.

        Returns the event id, or None when the row could not be written.
        """
        if duration_ms is not None and duration_ms > SLOW_SEARCH_MS:
            logger.warning("Slow %s search for user %s: %dms", search_type, user_id, duration_ms)
        if result_count == 0:
            logger.info("Zero-result %s search for user %s: %r", search_type, user_id, query)

        event = SearchEvent(
            user_id=user_id,
            query=query,
            search_type=search_type,
            result_count=result_count,
            duration_ms=duration_ms,
            details=details,
        )
        try:
            async with session_factory() as session:
                session.add(event)
                await session.flush()
                event_id = event.id
                await session.commit()
        except (SQLAlchemyError, OSError):
            logger.exception("Could not store %s search event for user %s", search_type, user_id)
            return None
        return event_id
