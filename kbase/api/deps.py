"""Shared FastAPI dependencies for process-wide services.

The lifespan in :mod:`kbase.main` stores one instance of each service on
``app.state``; when it has not run (scripts, tests) a fresh instance is
built from settings.
"""

from __future__ import annotations

from fastapi import Request

from kbase.config import get_settings
from kbase.search.cache import SearchCache
from kbase.search.embeddings import EmbeddingService
from kbase.services.llm_service import AnswerGenerator


def get_search_cache(request: Request) -> SearchCache | None:
    return getattr(request.app.state, "search_cache", None)


def get_embedding_service(request: Request) -> EmbeddingService:
    service = getattr(request.app.state, "embedding_service", None)
    if service is None:
        service = EmbeddingService.from_settings(get_settings())
    return service


def get_answer_generator(request: Request) -> AnswerGenerator:
    generator = getattr(request.app.state, "answer_generator", None)
    if generator is None:
        generator = AnswerGenerator.from_settings(get_settings())
    return generator
