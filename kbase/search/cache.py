# @TEST tests/test_cache.py

"""Bounded, TTL-expiring, tenant-scoped search result cache.

One :class:`SearchCache` instance is created per process (see
``kbase.main``) and handed to every consumer. All reads and writes go
through a single ``asyncio.Lock``: hit counters and eviction bookkeeping
are updated together with the read or insert that triggers them.

Two maps are kept:

* ``SearchResult`` entries keyed by :meth:`SearchCache.make_key`, with a
  per-entry TTL and a hit counter. Overflow evicts expired entries first,
  then the least-hit entries.
* Raw note lists used by :meth:`SearchCache.get_or_compute`, evicted
  oldest-first.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from kbase.search.errors import CacheUnavailable
from kbase.search.query_preprocessor import normalize_query
from kbase.search.schemas import NoteItem, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
MAX_CACHE_ENTRIES = 100


@dataclass
class CacheEntry:
    """A cached search result.

    Attributes:
        key: Cache key.
        value: The cached result.
        timestamp: Clock reading at insert time.
        ttl: Seconds the entry stays valid.
        hit_count: Number of successful reads.
    """

    key: str
    value: SearchResult
    timestamp: float
    ttl: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass
class _NotesEntry:
    notes: list[NoteItem]
    timestamp: float


class SearchCache:
    """In-process result cache shared by all search consumers.

    Args:
        default_ttl: TTL in seconds for entries stored without an explicit TTL.
        max_entries: Soft cap on the number of entries per map.
        clock: Monotonic clock returning seconds; injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = MAX_CACHE_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._notes: dict[str, _NotesEntry] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, settings) -> SearchCache:
        """Build a cache from :class:`kbase.config.Settings`."""
        return cls(
            default_ttl=settings.SEARCH_CACHE_TTL_SECONDS,
            max_entries=settings.SEARCH_CACHE_MAX_ENTRIES,
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def make_key(user_id: int, query: str) -> str:
        """Deterministic key for a tenant and a query.

        The query is lowercased and trimmed before hashing, so queries
        differing only in case or surrounding whitespace share an entry.
        """
        normalized = normalize_query(query)
        digest = hashlib.sha256(f"{user_id}:{normalized}".encode()).hexdigest()
        return f"search:{user_id}:{digest}"

    # ------------------------------------------------------------------
    # SearchResult cache
    # ------------------------------------------------------------------

    async def get(self, key: str) -> SearchResult | None:
        """Return the cached result for *key*, or None on a miss.

        An expired entry is a miss even if it has not been evicted yet.
        A hit increments the entry's hit counter.
        """
        async with self._lock:
            self._ensure_open()
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            entry.hit_count += 1
            return entry.value

    async def put(self, key: str, value: SearchResult, ttl: float | None = None) -> None:
        """Store *value* under *key* with a fresh timestamp and zero hits."""
        async with self._lock:
            self._ensure_open()
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                timestamp=self._clock(),
                ttl=self._default_ttl if ttl is None else ttl,
            )
            if len(self._entries) > self._max_entries:
                self._evict_entries(keep=key)

    async def cleanup(self) -> int:
        """Remove expired entries from both maps.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            self._ensure_open()
            now = self._clock()
            removed = self._remove_expired(now)
            removed += self._remove_expired_notes(now)
        if removed:
            logger.debug("Search cache cleanup removed %d entries", removed)
        return removed

    async def invalidate_user(self, user_id: int) -> int:
        """Drop every cached entry of one tenant.

        Returns:
            Number of entries removed.
        """
        prefix = f"search:{user_id}:"
        async with self._lock:
            self._ensure_open()
            stale = [key for key in self._entries if key.startswith(prefix)]
            stale_notes = [key for key in self._notes if key.startswith(prefix)]
            for key in stale:
                del self._entries[key]
            for key in stale_notes:
                del self._notes[key]
        return len(stale) + len(stale_notes)

    # ------------------------------------------------------------------
    # Raw note-list cache
    # ------------------------------------------------------------------

    async def get_or_compute(
        self,
        user_id: int,
        query: str,
        compute: Callable[[], Awaitable[list[NoteItem]]],
    ) -> list[NoteItem]:
        """Return cached notes for ``(user_id, query)`` or compute and store them.

        *compute* runs outside the lock; concurrent misses for the same
        query may both compute, and the last one to finish wins.
        """
        key = self.make_key(user_id, query)
        async with self._lock:
            self._ensure_open()
            cached = self._notes.get(key)
            if cached is not None and self._clock() - cached.timestamp <= self._default_ttl:
                return cached.notes

        notes = await compute()

        async with self._lock:
            self._ensure_open()
            self._notes[key] = _NotesEntry(notes=notes, timestamp=self._clock())
            if len(self._notes) > self._max_entries:
                self._evict_notes()
        return notes

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Drop all entries; any later call raises :class:`CacheUnavailable`."""
        async with self._lock:
            self._entries.clear()
            self._notes.clear()
            self._closed = True

    def __len__(self) -> int:
        return len(self._entries)

    def hit_count(self, key: str) -> int:
        """Hit counter of *key* (0 when absent); for diagnostics."""
        entry = self._entries.get(key)
        return entry.hit_count if entry else 0

    # ------------------------------------------------------------------
    # Internal helpers (call with the lock held)
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise CacheUnavailable("Search cache is closed")

    def _remove_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _remove_expired_notes(self, now: float) -> int:
        expired = [key for key, entry in self._notes.items() if now - entry.timestamp > self._default_ttl]
        for key in expired:
            del self._notes[key]
        return len(expired)

    def _evict_entries(self, keep: str) -> None:
        """Bring the result map back under the cap.

        Expired entries go first; then the lowest hit counts (oldest first
        on ties). The entry just inserted (*keep*) is never evicted.
        """
        self._remove_expired(self._clock())
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return

        candidates = sorted(
            (entry for key, entry in self._entries.items() if key != keep),
            key=lambda e: (e.hit_count, e.timestamp),
        )
        for entry in candidates[:overflow]:
            del self._entries[entry.key]
        logger.debug("Search cache evicted %d least-hit entries", min(overflow, len(candidates)))

    def _evict_notes(self) -> None:
        self._remove_expired_notes(self._clock())
        overflow = len(self._notes) - self._max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._notes.items(), key=lambda item: item[1].timestamp)[:overflow]
        for key, _ in oldest:
            del self._notes[key]
