# @TEST tests/test_store.py

"""Embedding persistence for the backfill pipeline.

Writes are chunked (at most ``MAX_BATCH_SIZE`` rows per statement group).
Small chunks use an ORM bulk ``UPDATE`` by primary key; larger chunks are
bulk-loaded with ``COPY`` into a temporary staging table and applied with
a single ``UPDATE ... FROM``. A failed bulk load falls back to the
row-wise path. Planner statistics for the embedding column are refreshed by
the caller once a run has updated more than ``ANALYZE_THRESHOLD`` rows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.models import Note
from kbase.search.schemas import BackfillTask

logger = logging.getLogger(__name__)

# Rows per chunk
MAX_BATCH_SIZE = 1000
# Chunks larger than this use COPY
COPY_THRESHOLD = 100
# Refresh planner statistics after updating more rows than this
ANALYZE_THRESHOLD = 1000

_STAGING_TABLE = "tmp_note_embeddings"


def _vector_literal(vector: list[float]) -> str:
    """pgvector text representation, e.g. ``[0.1,0.2]``."""
    return "[" + ",".join(str(float(v)) for v in vector) + "]"


def _updated_count(status: str) -> int:
    """Parse an asyncpg command status such as ``UPDATE 42``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class EmbeddingStore:
    """Reads notes lacking embeddings and writes embeddings back.

    Args:
        session: Session whose transaction the writes join; the caller commits.
        copy_threshold: Chunk size above which the COPY path is used.
        max_batch_size: Rows per chunk.
    """

    def __init__(
        self,
        session: AsyncSession,
        copy_threshold: int = COPY_THRESHOLD,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self._session = session
        self._copy_threshold = copy_threshold
        self._max_batch_size = max_batch_size

    async def fetch_notes_without_embeddings(
        self,
        user_id: int | None = None,
        limit: int = 100,
        exclude_ids: Iterable[str] = (),
    ) -> list[BackfillTask]:
        """Return up to *limit* notes with no embedding, newest first.

        Args:
            user_id: Restrict to one tenant (None = all tenants).
            limit: Maximum number of notes.
            exclude_ids: Note ids to skip (items that already failed this run).
        """
        stmt = select(Note.id, Note.content).where(Note.embedding.is_(None))
        if user_id is not None:
            stmt = stmt.where(Note.user_id == user_id)
        excluded = [uuid.UUID(note_id) for note_id in exclude_ids]
        if excluded:
            stmt = stmt.where(Note.id.not_in(excluded))
        stmt = stmt.order_by(Note.created_at.desc()).limit(limit)

        result = await self._session.execute(stmt)
        return [BackfillTask(note_id=str(row.id), content=row.content) for row in result.all()]

    async def update_embedding(self, note_id: str, embedding: list[float]) -> bool:
        """Set the embedding of one note; returns whether a row was updated."""
        stmt = (
            update(Note)
            .where(Note.id == uuid.UUID(note_id))
            .values(embedding=embedding, updated_at=func.now())
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def update_embeddings_batch(self, updates: list[tuple[str, list[float]]]) -> int:
        """Write many embeddings; returns the number of rows updated."""
        total = 0
        for start in range(0, len(updates), self._max_batch_size):
            chunk = updates[start : start + self._max_batch_size]
            if len(chunk) > self._copy_threshold:
                try:
                    total += await self._bulk_load(chunk)
                    continue
                except Exception as exc:
                    logger.warning("Bulk embedding load failed, falling back to row updates: %r", exc)
            total += await self._update_rows(chunk)
        return total

    async def refresh_statistics(self) -> None:
        """Run ANALYZE on the embedding column; failures are logged only.

        Called once after a backfill run that updated more than
        ``ANALYZE_THRESHOLD`` rows.
        """
        try:
            async with self._session.begin_nested():
                await self._session.execute(text("ANALYZE notes (embedding)"))
        except Exception as exc:
            logger.warning("ANALYZE notes (embedding) failed: %r", exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _update_rows(self, chunk: list[tuple[str, list[float]]]) -> int:
        """ORM bulk UPDATE by primary key (executemany)."""
        await self._session.execute(
            update(Note),
            [{"id": uuid.UUID(note_id), "embedding": embedding} for note_id, embedding in chunk],
        )
        return len(chunk)

    async def _bulk_load(self, chunk: list[tuple[str, list[float]]]) -> int:
        """COPY the chunk into a staging table and apply it in one UPDATE.

        Runs inside a savepoint so that a failure leaves the surrounding
        transaction usable for the fallback path.
        """
        records = [(uuid.UUID(note_id), _vector_literal(embedding)) for note_id, embedding in chunk]

        async with self._session.begin_nested():
            conn = await self._session.connection()
            raw = await conn.get_raw_connection()
            driver = raw.driver_connection

            await driver.execute(
                f"CREATE TEMP TABLE {_STAGING_TABLE} (id uuid PRIMARY KEY, embedding text) ON COMMIT DROP"
            )
            await driver.copy_records_to_table(_STAGING_TABLE, records=records, columns=["id", "embedding"])
            status = await driver.execute(
                f"UPDATE notes SET embedding = t.embedding::vector, updated_at = now() "
                f"FROM {_STAGING_TABLE} t WHERE notes.id = t.id"
            )
            await driver.execute(f"DROP TABLE {_STAGING_TABLE}")

        updated = _updated_count(status)
        logger.debug("Bulk-loaded %d embeddings (%d rows updated)", len(records), updated)
        return updated

