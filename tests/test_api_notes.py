# @TEST tests/test_api_notes.py

"""Tests for the Notes API endpoints (create, edit, similar notes).

NotesService and VectorSearchEngine are patched; the database session
dependency is overridden with a mock.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from kbase.search.schemas import NoteItem

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _note(note_id: str | None = None, content: str = "hello") -> NoteItem:
    return NoteItem(id=note_id or str(uuid.uuid4()), user_id=1, content=content, tags=["t"], category="work")


@pytest.fixture
def app():
    from kbase.api.deps import get_embedding_service
    from kbase.database import get_db, get_session_factory
    from kbase.main import app

    async def override_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: MagicMock()
    app.dependency_overrides[get_embedding_service] = lambda: MagicMock()
    yield app
    app.dependency_overrides.clear()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ---------------------------------------------------------------------------
# POST /api/notes
# ---------------------------------------------------------------------------


class TestCreateNote:
    @pytest.mark.asyncio
    async def test_create_returns_201(self, app):
        created = _note(content="new note")
        with patch("kbase.api.notes.NotesService") as service_cls:
            service_cls.return_value.create_note = AsyncMock(return_value=created)
            async with _client(app) as client:
                response = await client.post(
                    "/api/notes",
                    json={"user_id": 1, "content": "new note", "tags": ["t"], "category": "work"},
                )

        assert response.status_code == 201
        assert response.json()["id"] == created.id
        kwargs = service_cls.return_value.create_note.await_args.kwargs
        assert kwargs["tags"] == ["t"]
        assert kwargs["generate_embedding"] is True

    @pytest.mark.asyncio
    async def test_empty_content_returns_422(self, app):
        async with _client(app) as client:
            response = await client.post("/api/notes", json={"user_id": 1, "content": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_whitespace_content_returns_422(self, app):
        with patch("kbase.api.notes.NotesService") as service_cls:
            service_cls.return_value.create_note = AsyncMock(side_effect=ValueError("Note content must not be empty"))
            async with _client(app) as client:
                response = await client.post("/api/notes", json={"user_id": 1, "content": "   "})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# PATCH /api/notes/{id}
# ---------------------------------------------------------------------------


class TestUpdateNote:
    @pytest.mark.asyncio
    async def test_update_success(self, app):
        note_id = str(uuid.uuid4())
        with patch("kbase.api.notes.NotesService") as service_cls:
            service_cls.return_value.update_note = AsyncMock(return_value=_note(note_id, "edited"))
            async with _client(app) as client:
                response = await client.patch(f"/api/notes/{note_id}", json={"user_id": 1, "content": "edited"})

        assert response.status_code == 200
        assert response.json()["content"] == "edited"
        args = service_cls.return_value.update_note.await_args
        assert args.args == (1, note_id)

    @pytest.mark.asyncio
    async def test_unknown_note_returns_404(self, app):
        with patch("kbase.api.notes.NotesService") as service_cls:
            service_cls.return_value.update_note = AsyncMock(return_value=None)
            async with _client(app) as client:
                response = await client.patch(f"/api/notes/{uuid.uuid4()}", json={"user_id": 1, "content": "x"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_id_returns_404(self, app):
        async with _client(app) as client:
            response = await client.patch("/api/notes/not-a-uuid", json={"user_id": 1, "content": "x"})
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# GET /api/notes/{id}/similar
# ---------------------------------------------------------------------------


class TestSimilarNotes:
    @pytest.mark.asyncio
    async def test_similar_notes(self, app):
        note_id = str(uuid.uuid4())
        neighbour = _note(content="close by")
        with patch("kbase.api.notes.VectorSearchEngine") as engine_cls:
            engine_cls.return_value.find_similar = AsyncMock(return_value=[(neighbour, 0.87)])
            async with _client(app) as client:
                response = await client.get(f"/api/notes/{note_id}/similar", params={"user_id": 1, "limit": 3})

        assert response.status_code == 200
        data = response.json()
        assert data[0]["note"]["id"] == neighbour.id
        assert data[0]["similarity"] == pytest.approx(0.87)
        engine_cls.return_value.find_similar.assert_awaited_once_with(note_id, 1, limit=3, threshold=0.5)

    @pytest.mark.asyncio
    async def test_no_similar_notes(self, app):
        with patch("kbase.api.notes.VectorSearchEngine") as engine_cls:
            engine_cls.return_value.find_similar = AsyncMock(return_value=[])
            async with _client(app) as client:
                response = await client.get(f"/api/notes/{uuid.uuid4()}/similar", params={"user_id": 1})

        assert response.status_code == 200
        assert response.json() == []
