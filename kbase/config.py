"""pydantic-settings based application settings."""

from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Knowledge-base service settings.

    All values are loaded from environment variables.
    A .env file in the working directory is also supported.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Database ---
    DATABASE_URL: str = "postgresql+asyncpg://kbase:kbase@db:5432/kbase"

    # --- Embeddings ---
    OPENAI_API_KEY: str = ""
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 1536
    EMBEDDING_SERVICE_URL: str = ""  # Local HTTP embedding service (overrides OpenAI)
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0

    # --- Answer generation ---
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 60.0

    # --- Search cache ---
    SEARCH_CACHE_TTL_SECONDS: float = 300.0
    HYBRID_CACHE_TTL_SECONDS: float = 600.0
    SEARCH_CACHE_MAX_ENTRIES: int = 100
    CACHE_CLEANUP_INTERVAL_SECONDS: float = 60.0

    # --- Embedding backfill ---
    BACKFILL_BATCH_SIZE: int = 100
    BACKFILL_BATCH_DELAY_SECONDS: float = 0.1

    # --- Search tuning (overrides for kbase.search.params) ---
    SEARCH_PARAMS: dict[str, Any] = {}

    LOG_LEVEL: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Ensure the database URL uses the asyncpg driver."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings singleton."""
    return Settings()
