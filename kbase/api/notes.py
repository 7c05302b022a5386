# @TEST tests/test_api_notes.py

"""Notes API endpoints.

Provides:
- ``POST /notes`` -- Create a note (embedded synchronously when possible).
- ``PATCH /notes/{note_id}`` -- Edit a note; re-embeds on content change.
- ``GET /notes/{note_id}/similar`` -- Notes semantically close to a note.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.api.deps import get_embedding_service, get_search_cache
from kbase.database import SessionFactory, get_db, get_session_factory
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.search.engine import VectorSearchEngine
from kbase.search.schemas import NoteItem
from kbase.services.notes_service import NotesService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notes", tags=["notes"])


class NoteCreateRequest(BaseModel):
    user_id: int
    content: str = Field(..., min_length=1)
    tags: list[str] | None = None
    category: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] | None = None
    generate_embedding: bool = True


class NoteUpdateRequest(BaseModel):
    user_id: int
    content: str | None = Field(None, min_length=1)
    tags: list[str] | None = None
    category: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] | None = None
    regenerate_embedding: bool = True


class SimilarNoteResponse(BaseModel):
    note: NoteItem
    similarity: float


def _parse_note_id(note_id: str) -> str:
    try:
        return str(uuid.UUID(note_id))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found") from exc


@router.post("", response_model=NoteItem, status_code=status.HTTP_201_CREATED)
async def create_note(
    request: NoteCreateRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    cache: SearchCache | None = Depends(get_search_cache),  # noqa: B008
    embedding_service: EmbeddingService = Depends(get_embedding_service),  # noqa: B008
) -> NoteItem:
    service = NotesService(db, embedding_service, cache=cache)
    try:
        return await service.create_note(
            request.user_id,
            request.content,
            tags=request.tags,
            category=request.category,
            metadata=request.metadata,
            generate_embedding=request.generate_embedding,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.patch("/{note_id}", response_model=NoteItem)
async def update_note(
    note_id: str,
    request: NoteUpdateRequest,
    db: AsyncSession = Depends(get_db),  # noqa: B008
    cache: SearchCache | None = Depends(get_search_cache),  # noqa: B008
    embedding_service: EmbeddingService = Depends(get_embedding_service),  # noqa: B008
) -> NoteItem:
    note_id = _parse_note_id(note_id)
    service = NotesService(db, embedding_service, cache=cache)
    try:
        note = await service.update_note(
            request.user_id,
            note_id,
            content=request.content,
            tags=request.tags,
            category=request.category,
            metadata=request.metadata,
            regenerate_embedding=request.regenerate_embedding,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if note is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found")
    return note


@router.get("/{note_id}/similar", response_model=list[SimilarNoteResponse])
async def similar_notes(
    note_id: str,
    user_id: int = Query(...),  # noqa: B008
    limit: int = Query(5, ge=1, le=50),  # noqa: B008
    threshold: float = Query(0.5, ge=0.0, le=1.0),  # noqa: B008
    session_factory: SessionFactory = Depends(get_session_factory),  # noqa: B008
) -> list[SimilarNoteResponse]:
    """Notes of the same user most similar to *note_id*."""
    note_id = _parse_note_id(note_id)
    engine = VectorSearchEngine(session_factory)
    pairs = await engine.find_similar(note_id, user_id, limit=limit, threshold=threshold)
    return [SimilarNoteResponse(note=note, similarity=score) for note, score in pairs]
