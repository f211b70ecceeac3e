"""
In-memory chapter content cache with background prefetch.

Bounded by entry count and by an estimated memory cost; whichever limit is
hit first evicts the least recently used chapters. Prefetch runs one task
per chapter id: a newer prefetch for the same id cancels the older one, and
a superseded or cancelled task never writes to the cache.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from . import endpoints
from .client import AuthenticatedClient
from .config import ClientSettings
from .errors import NoDataError
from .models import utcnow
from .schemas import ApiResponse, ChapterContent

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[ChapterContent]]

BASE_COST = 1024
SEGMENT_OVERHEAD = 100
SPAN_OVERHEAD = 50


def estimate_cost(chapter: ChapterContent) -> int:
    """Approximate in-memory footprint of a chapter, in bytes."""
    cost = BASE_COST
    for segment in chapter.content_segments:
        cost += len(segment.content) * 2 + SEGMENT_OVERHEAD
        cost += len(segment.spans) * SPAN_OVERHEAD
    return cost


def chapter_fetcher(client: AuthenticatedClient) -> Fetcher:
    """Fetcher that loads chapter content through the authenticated client."""

    async def fetch(chapter_id: str) -> ChapterContent:
        envelope = await client.request(
            endpoints.chapter_content(chapter_id),
            ApiResponse[ChapterContent],
        )
        if not envelope.ok or envelope.data is None:
            raise NoDataError(envelope.message or f"Chapter {chapter_id} unavailable")
        return envelope.data

    return fetch


@dataclass
class CachedEntry:
    chapter_id: str
    content: ChapterContent
    estimated_cost: int
    cached_at: datetime = field(default_factory=utcnow)


class ContentCache:
    """LRU chapter cache bounded by count and total estimated cost."""

    def __init__(
        self,
        count_limit: int = 10,
        cost_limit: int = 50 * 1024 * 1024,
    ):
        self.count_limit = count_limit
        self.cost_limit = cost_limit
        self._entries: "OrderedDict[str, CachedEntry]" = OrderedDict()
        self._total_cost = 0
        self._prefetches: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ContentCache":
        return cls(count_limit=settings.cache_count_limit, cost_limit=settings.cache_cost_limit)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_cost(self) -> int:
        return self._total_cost

    # === Cache Operations ===

    def get(self, chapter_id: str) -> Optional[ChapterContent]:
        entry = self._entries.get(chapter_id)
        if entry is None:
            return None
        self._entries.move_to_end(chapter_id)
        return entry.content

    def set(self, chapter_id: str, content: ChapterContent) -> None:
        cost = estimate_cost(content)
        self._remove_entry(chapter_id)
        self._entries[chapter_id] = CachedEntry(chapter_id, content, cost)
        self._total_cost += cost
        self._evict()

    def contains(self, chapter_id: str) -> bool:
        return chapter_id in self._entries

    def remove(self, chapter_id: str) -> None:
        """Drop a chapter and any prefetch in flight for it."""
        self.cancel_prefetch(chapter_id)
        self._remove_entry(chapter_id)

    def _remove_entry(self, chapter_id: str) -> None:
        entry = self._entries.pop(chapter_id, None)
        if entry is not None:
            self._total_cost -= entry.estimated_cost

    def clear(self) -> None:
        self.cancel_all()
        self._entries.clear()
        self._total_cost = 0
        logger.debug("Content cache cleared")

    def _evict(self) -> None:
        # The newest entry is kept even if it alone exceeds the cost limit.
        while len(self._entries) > 1 and (
            len(self._entries) > self.count_limit or self._total_cost > self.cost_limit
        ):
            chapter_id, entry = self._entries.popitem(last=False)
            self._total_cost -= entry.estimated_cost
            logger.debug(f"Evicted chapter {chapter_id} ({entry.estimated_cost} bytes)")

    # === Prefetch ===

    def prefetch(self, chapter_id: str, fetcher: Fetcher) -> Optional[asyncio.Task]:
        """
        Fetch a chapter in the background and cache it.

        Any prefetch already running for ``chapter_id`` is cancelled first.
        Must be called from a running event loop.

        Returns:
            The prefetch task, or None if the chapter is already cached.
        """
        self.cancel_prefetch(chapter_id)
        if self.contains(chapter_id):
            return None

        task = asyncio.get_running_loop().create_task(self._prefetch(chapter_id, fetcher))
        self._prefetches[chapter_id] = task
        task.add_done_callback(lambda t: self._release(chapter_id, t))
        return task

    async def _prefetch(self, chapter_id: str, fetcher: Fetcher) -> None:
        current = asyncio.current_task()
        try:
            content = await fetcher(chapter_id)
        except asyncio.CancelledError:
            logger.debug(f"Prefetch of {chapter_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Prefetch of {chapter_id} failed: {e}")
            return

        if self._prefetches.get(chapter_id) is not current:
            logger.debug(f"Discarding superseded prefetch of {chapter_id}")
            return
        self.set(chapter_id, content)
        logger.debug(f"Prefetched chapter {chapter_id}")

    def _release(self, chapter_id: str, task: asyncio.Task) -> None:
        if self._prefetches.get(chapter_id) is task:
            del self._prefetches[chapter_id]

    def is_prefetching(self, chapter_id: str) -> bool:
        return chapter_id in self._prefetches

    def cancel_prefetch(self, chapter_id: str) -> None:
        task = self._prefetches.pop(chapter_id, None)
        if task is not None:
            task.cancel()

    def cancel_all(self) -> None:
        for task in self._prefetches.values():
            task.cancel()
        self._prefetches.clear()
