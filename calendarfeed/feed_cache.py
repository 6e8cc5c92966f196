"""Page slicing and TTL caching of normalized calendar events.

The pager works against an injected ``CacheStore`` so the cache lifetime is owned by
whoever constructs it (normally one store per process, shared by all sources).
Entries are never swept; they are treated as missing once their TTL has elapsed.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Sequence
from typing import Any, Callable, Optional, Protocol

from .feed_models import CalendarEvent, FetchMetadata, Page

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def meta_key(source_url: str) -> str:
    """Cache key of the fetch metadata for a source."""
    return f"calendar_cache_{source_url}"


def page_key(source_url: str, page_number: int) -> str:
    """Cache key of one page for a source."""
    return f"{meta_key(source_url)}_page_{page_number}"


class CacheStore(Protocol):
    """Key/value store with per-entry time-to-live in seconds."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...


class MemoryCacheStore:
    """In-process cache store with logical expiry on read.

    Example:
        store = MemoryCacheStore()
        store.set("key", {"a": 1}, ttl=300)
        store.get("key")  # {"a": 1} until 300 seconds have passed
    """

    def __init__(self, clock: Clock = time.time):
        """Initialize the store.

        Args:
            clock: Returns the current time in seconds
        """
        self._entries: dict[str, tuple[Any, float]] = {}
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "expired": 0}

    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None

        value, expires_at = entry
        if self._clock() >= expires_at:
            self.stats["expired"] += 1
            logger.debug("Cache entry expired: %s", key)
            return None

        self.stats["hits"] += 1
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds, replacing any previous entry."""
        self._entries[key] = (value, self._clock() + ttl)

    def __len__(self) -> int:
        return len(self._entries)


class FeedPager:
    """Slices normalized events into pages and caches them per source."""

    def __init__(self, store: CacheStore, clock: Clock = time.time):
        """Initialize the pager.

        Args:
            store: Cache store shared by all sources
            clock: Returns the current time in seconds, used for fetch timestamps
        """
        self.store = store
        self._clock = clock

    def now(self) -> float:
        """Current time in seconds according to the pager clock."""
        return self._clock()

    @staticmethod
    def paginate(events: Sequence[CalendarEvent], page_number: int, page_size: int) -> Page:
        """Slice one page out of a sorted event list.

        Args:
            events: Normalized events, already sorted
            page_number: 1-based page number
            page_size: Events per page

        Returns:
            Page with ``has_more`` set when events remain past this page
        """
        if page_number < 1:
            raise ValueError("page_number must be >= 1")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        start = (page_number - 1) * page_size
        end = start + page_size
        return Page(
            events=list(events[start:end]),
            has_more=end < len(events),
            total_events=len(events),
            page_number=page_number,
        )

    def get_page(
        self,
        source_url: str,
        page_number: int,
        page_size: int,
        events: Sequence[CalendarEvent],
        ttl: float,
    ) -> Page:
        """Slice a page and write it, plus fresh fetch metadata, to the cache.

        Args:
            source_url: Calendar source the events came from
            page_number: 1-based page number
            page_size: Events per page
            events: Normalized events of the source
            ttl: Lifetime of the cache entries in seconds (the reload interval)

        Returns:
            The computed page
        """
        page = self.paginate(events, page_number, page_size)
        metadata = FetchMetadata(
            last_fetch_timestamp=self._clock(),
            total_pages=math.ceil(page.total_events / page_size),
        )
        self.store.set(page_key(source_url, page_number), page, ttl)
        self.store.set(meta_key(source_url), metadata, ttl)

        logger.debug(
            "Cached page %d of %s (%d/%d events, has_more=%s)",
            page_number,
            source_url,
            len(page.events),
            page.total_events,
            page.has_more,
        )
        return page

    def store_page(self, source_url: str, page: Page, ttl: float) -> None:
        """Cache an already computed page without touching the fetch metadata."""
        self.store.set(page_key(source_url, page.page_number), page, ttl)

    def cached_page(self, source_url: str, page_number: int) -> Optional[Page]:
        """Return the cached page for a source, if still alive."""
        return self.store.get(page_key(source_url, page_number))

    def metadata(self, source_url: str) -> Optional[FetchMetadata]:
        """Return the cached fetch metadata for a source, if still alive."""
        return self.store.get(meta_key(source_url))

    def is_fresh(self, source_url: str, reload_interval: float) -> bool:
        """Check whether the source was fetched less than ``reload_interval`` seconds ago."""
        metadata = self.metadata(source_url)
        if metadata is None:
            return False
        return self._clock() - metadata.last_fetch_timestamp < reload_interval
