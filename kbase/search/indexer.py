# @TEST tests/test_indexer.py

"""Note indexer: embeddings for single notes and the backfill pipeline.

Single notes are embedded synchronously on create/edit
(:meth:`NoteIndexer.index_note`). Notes that ended up without an
embedding (provider outage, import, failed item) are picked up by
:meth:`NoteIndexer.run_backfill`, which walks them newest-first in
batches, commits after each batch and can be restarted at any time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.models import Note
from kbase.search.embeddings import EmbeddingService
from kbase.search.errors import BatchItemFailure, EmbeddingError, EmbeddingUnavailable
from kbase.search.schemas import BackfillTask
from kbase.search.store import ANALYZE_THRESHOLD, EmbeddingStore

logger = logging.getLogger(__name__)

# Texts per embedding request during backfill
EMBED_BATCH_SIZE = 100


@dataclass
class BackfillReport:
    """Summary of a backfill run.

    Attributes:
        processed: Number of notes that received an embedding.
        batches: Number of fetched batches.
        failures: Notes that could not be embedded (skipped for this run).
        stopped_early: True when the provider became unavailable mid-run.
    """

    processed: int = 0
    batches: int = 0
    failures: list[BatchItemFailure] = field(default_factory=list)
    stopped_early: bool = False


class NoteIndexer:
    """Manages the embedding lifecycle of notes.

    Args:
        session: Async session; the backfill commits it after every batch.
        embedding_service: Service generating vector embeddings.
        store: Embedding persistence (defaults to an :class:`EmbeddingStore`
            on *session*).
        batch_delay: Seconds to wait between backfill batches.
        embed_batch_size: Texts per embedding request.
    """

    def __init__(
        self,
        session: AsyncSession,
        embedding_service: EmbeddingService,
        store: EmbeddingStore | None = None,
        batch_delay: float = 0.1,
        embed_batch_size: int = EMBED_BATCH_SIZE,
    ) -> None:
        self._session = session
        self._embedding_service = embedding_service
        self._store = store or EmbeddingStore(session)
        self._batch_delay = batch_delay
        self._embed_batch_size = embed_batch_size

    # ------------------------------------------------------------------
    # Single notes
    # ------------------------------------------------------------------

    async def index_note(self, note_id: str) -> bool:
        """Embed one note and store the vector.

        Returns:
            True if an embedding was written, False for blank content.

        Raises:
            ValueError: If the note does not exist.
            EmbeddingError: If the provider call fails.
        """
        note = await self._session.get(Note, uuid.UUID(note_id))
        if note is None:
            raise ValueError(f"Note {note_id} not found")

        embedding = await self._embedding_service.embed_text(note.content)
        if not embedding:
            logger.debug("Note %s has no content, skipping embedding", note_id)
            return False

        await self._store.update_embedding(note_id, embedding)
        logger.info("Indexed note %s", note_id)
        return True

    async def reindex_note(self, note_id: str) -> bool:
        """Drop the stored embedding of a note and embed it again.

        If embedding fails the note is left without a vector, so the next
        backfill run picks it up instead of serving a stale one.
        """
        await self._session.execute(update(Note).where(Note.id == uuid.UUID(note_id)).values(embedding=None))
        return await self.index_note(note_id)

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def process_notes_without_embeddings(self, user_id: int | None = None, batch_size: int = 100) -> int:
        """Embed every note lacking an embedding; returns the processed count."""
        report = await self.run_backfill(user_id, batch_size)
        return report.processed

    async def run_backfill(self, user_id: int | None = None, batch_size: int = 100) -> BackfillReport:
        """Backfill embeddings batch by batch until nothing is left.

        Notes that fail are excluded from later fetches of the same run, so
        the loop always terminates. An unavailable provider ends the run
        early; already committed batches are kept. Planner statistics are
        refreshed at the end of a run that embedded more than
        ``ANALYZE_THRESHOLD`` notes.
        """
        report = BackfillReport()
        failed_ids: set[str] = set()

        while True:
            tasks = await self._store.fetch_notes_without_embeddings(
                user_id, limit=batch_size, exclude_ids=failed_ids
            )
            if not tasks:
                break

            updates, failures, unavailable = await self._embed_tasks(tasks)
            if updates:
                report.processed += await self._store.update_embeddings_batch(updates)
            await self._session.commit()

            report.batches += 1
            report.failures.extend(failures)
            failed_ids.update(f.note_id for f in failures)

            logger.info(
                "Backfill batch %d: %d embedded, %d failed (total %d)",
                report.batches,
                len(updates),
                len(failures),
                report.processed,
            )

            if unavailable:
                report.stopped_early = True
                logger.warning("Embedding provider unavailable, stopping backfill after %d notes", report.processed)
                break

            await asyncio.sleep(self._batch_delay)

        if report.processed > ANALYZE_THRESHOLD:
            await self._store.refresh_statistics()
            await self._session.commit()

        logger.info(
            "Backfill finished: %d notes embedded in %d batches, %d failures",
            report.processed,
            report.batches,
            len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _embed_tasks(
        self, tasks: list[BackfillTask]
    ) -> tuple[list[tuple[str, list[float]]], list[BatchItemFailure], bool]:
        """Embed a fetched batch in provider-sized sub-batches.

        Returns ``(updates, failures, provider_unavailable)``.
        """
        updates: list[tuple[str, list[float]]] = []
        failures: list[BatchItemFailure] = []

        embeddable: list[BackfillTask] = []
        for task in tasks:
            if task.content and task.content.strip():
                embeddable.append(task)
            else:
                failures.append(BatchItemFailure(task.note_id, "empty content"))

        for start in range(0, len(embeddable), self._embed_batch_size):
            chunk = embeddable[start : start + self._embed_batch_size]
            try:
                vectors = await self._embedding_service.embed_texts([t.content for t in chunk])
            except EmbeddingError as exc:
                logger.warning("Batch embedding of %d notes failed, retrying one by one: %s", len(chunk), exc)
                unavailable = await self._embed_one_by_one(chunk, updates, failures)
                if unavailable:
                    return updates, failures, True
                continue

            updates.extend((t.note_id, vector) for t, vector in zip(chunk, vectors, strict=True))

        return updates, failures, False

    async def _embed_one_by_one(
        self,
        chunk: list[BackfillTask],
        updates: list[tuple[str, list[float]]],
        failures: list[BatchItemFailure],
    ) -> bool:
        """Retry a failed sub-batch item by item; returns True if the provider is unavailable."""
        for task in chunk:
            try:
                vector = await self._embedding_service.embed_text(task.content)
            except EmbeddingUnavailable:
                return True
            except EmbeddingError as exc:
                logger.warning("Embedding failed for note %s: %s", task.note_id, exc)
                failures.append(BatchItemFailure(task.note_id, str(exc)))
                continue
            updates.append((task.note_id, vector))
        return False
