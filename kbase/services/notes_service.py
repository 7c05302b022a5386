# @TEST tests/test_notes_service.py

"""Note creation and editing with synchronous embedding and cache invalidation."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from kbase.models import Note
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.engine import note_to_item
from kbase.search.errors import CacheUnavailable, EmbeddingError
from kbase.search.indexer import NoteIndexer
from kbase.search.schemas import NoteItem
from kbase.services.tag_extraction import TagExtractionService

logger = logging.getLogger(__name__)


def _unique_tags(tags: list[str]) -> list[str]:
    """Strip, drop blanks and duplicates, keep first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


class NotesService:
    """Create and edit notes of a user.

    Embedding failures never fail the write: the note is stored without a
    vector and picked up by the next backfill run.

    Args:
        session: Request-scoped session; the caller commits.
        embedding_service: Used to embed new and edited notes.
        cache: Search cache whose entries for the user are dropped after writes.
        tag_service: Extracts tags/category when the caller gives none.
    """

    def __init__(
        self,
        session: AsyncSession,
        embedding_service: EmbeddingService,
        cache: SearchCache | None = None,
        tag_service: TagExtractionService | None = None,
    ) -> None:
        self._session = session
        self._cache = cache
        self._tag_service = tag_service or TagExtractionService()
        self._indexer = NoteIndexer(session, embedding_service)

    async def create_note(
        self,
        user_id: int,
        content: str,
        tags: list[str] | None = None,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
        generate_embedding: bool = True,
    ) -> NoteItem:
        """Store a new note.

        When neither *tags* nor *category* is given they are extracted from
        the content.

        Raises:
            ValueError: If *content* is blank.
        """
        if not content or not content.strip():
            raise ValueError("Note content must not be empty")

        if tags is None and category is None:
            tags, category = self._tag_service.extract_tags_and_category(content)

        note = Note(
            user_id=user_id,
            content=content,
            tags=_unique_tags(tags or []),
            category=category,
            note_metadata=metadata or {},
        )
        self._session.add(note)
        await self._session.flush()

        if generate_embedding:
            await self._embed(note.id, reindex=False)

        await self._session.refresh(note)
        await self._invalidate(user_id)
        logger.info("Created note %s for user %d", note.id, user_id)
        return note_to_item(note)

    async def update_note(
        self,
        user_id: int,
        note_id: str,
        content: str | None = None,
        tags: list[str] | None = None,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
        regenerate_embedding: bool = True,
    ) -> NoteItem | None:
        """Edit a note of *user_id*; returns None if it does not exist.

        The embedding is regenerated only when the content changed.
        """
        note = await self._session.get(Note, uuid.UUID(note_id))
        if note is None or note.user_id != user_id:
            return None

        content_changed = content is not None and content != note.content
        if content is not None:
            if not content.strip():
                raise ValueError("Note content must not be empty")
            note.content = content
        if tags is not None:
            note.tags = _unique_tags(tags)
        if category is not None:
            note.category = category
        if metadata is not None:
            note.note_metadata = metadata
        await self._session.flush()

        if content_changed and regenerate_embedding:
            await self._embed(note.id, reindex=True)

        await self._session.refresh(note)
        await self._invalidate(user_id)
        return note_to_item(note)

    async def _embed(self, note_id: uuid.UUID, reindex: bool) -> None:
        try:
            if reindex:
                await self._indexer.reindex_note(str(note_id))
            else:
                await self._indexer.index_note(str(note_id))
        except EmbeddingError as exc:
            logger.warning("Note %s stored without embedding: %s", note_id, exc)

    async def _invalidate(self, user_id: int) -> None:
        if self._cache is None:
            return
        try:
            removed = await self._cache.invalidate_user(user_id)
        except CacheUnavailable:
            return
        if removed:
            logger.debug("Invalidated %d cached searches for user %d", removed, user_id)
