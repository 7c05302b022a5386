"""Async database engine, session factory and declarative base.

Retrieval paths that run concurrently each open their own session from
``async_session_factory``; a single ``AsyncSession`` must never be shared
between tasks running at the same time.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from kbase.config import get_settings

SessionFactory = async_sessionmaker[AsyncSession]

settings = get_settings()

engine = create_async_engine(
    settings.async_database_url,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory: SessionFactory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base shared by the notes and telemetry tables."""


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session.

    Commits when the request handler returns normally and rolls back
    (re-raising) on any exception.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> SessionFactory:
    """FastAPI dependency returning the shared session factory.

    Search engines need the factory rather than a single session so that
    the vector and lexical paths can run in parallel.
    """
    return async_session_factory
