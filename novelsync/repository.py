"""
Local reading-progress repository.

Everything here works offline: reads and writes hit the local store only.
The one network touch is the best-effort remote delete after a local delete.
"""

import asyncio
import logging
from typing import Optional

from . import endpoints
from .client import AuthenticatedClient
from .errors import ClientError
from .models import ProgressRecord, clamp_fraction, utcnow
from .storage import ProgressStore
from .tracker import validate_reading_speed

logger = logging.getLogger(__name__)


class ProgressRepository:
    """Local CRUD for progress records plus the tracker's flush sink."""

    def __init__(self, store: ProgressStore, client: Optional[AuthenticatedClient] = None):
        self.store = store
        self.client = client
        self._pending_deletes: set[asyncio.Task] = set()

    # === Reads ===

    def get_progress(self, novel_id: str) -> Optional[ProgressRecord]:
        return self.store.get(novel_id)

    def get_all_reading_history(self) -> list[ProgressRecord]:
        """All records, most recently read first."""
        return self.store.all()

    # === Writes ===

    def save_progress(self, record: ProgressRecord) -> None:
        """Insert or replace a record (first read event of a novel)."""
        self.store.upsert(record)

    def update_progress(
        self,
        novel_id: str,
        chapter_id: str,
        chapter_order: int,
        chapter_title: str,
        position: int = 0,
        scroll_percentage: Optional[float] = None,
        segment_index: int = 0,
    ) -> Optional[ProgressRecord]:
        """
        Record navigation within a novel.

        Returns:
            The updated record, or None if the novel has no record yet.
        """
        with self.store.locked():
            record = self.store.get(novel_id)
            if record is None:
                return None

            record.current_chapter_id = chapter_id
            record.current_chapter_order = chapter_order
            record.current_chapter_title = chapter_title
            record.current_position = position
            record.scroll_percentage = clamp_fraction(scroll_percentage)
            record.segment_index = segment_index
            record.last_read_date = utcnow()
            if chapter_order > record.total_chapters_read:
                record.total_chapters_read = chapter_order

            self.store.upsert(record)
        return record

    def add_reading_time(
        self,
        novel_id: str,
        milliseconds: int,
        word_count: Optional[int] = None,
    ) -> bool:
        """
        Accept a tracker flush into the record's unsynced delta.

        Args:
            novel_id: Novel the time was spent on
            milliseconds: Flushed active reading time
            word_count: Words in the content read, for the reading-speed check

        Returns:
            True if the time was added. Rejected deltas are logged and dropped.
        """
        if milliseconds <= 0:
            return False
        if word_count is not None and not validate_reading_speed(milliseconds, word_count):
            logger.warning(
                f"Dropped {milliseconds}ms for {novel_id}: implausible reading speed"
            )
            return False

        added = self.store.increment_unsynced_delta(novel_id, milliseconds)
        if not added:
            logger.warning(f"No progress record for {novel_id}; dropped {milliseconds}ms")
        return added

    def delete_progress(self, novel_id: str) -> bool:
        """
        Delete locally right away; ask the server to delete in the background.

        Returns:
            True if a local record was removed.
        """
        removed = self.store.delete(novel_id)
        if removed:
            logger.info(f"Deleted local progress for {novel_id}")
            self._schedule_remote_delete(novel_id)
        return removed

    def _schedule_remote_delete(self, novel_id: str) -> None:
        if self.client is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop; remote delete of {novel_id} skipped")
            return
        task = loop.create_task(self._remote_delete(novel_id))
        self._pending_deletes.add(task)
        task.add_done_callback(self._pending_deletes.discard)

    async def _remote_delete(self, novel_id: str) -> None:
        try:
            await self.client.request(endpoints.library_delete_progress(novel_id))
            logger.debug(f"Remote progress for {novel_id} deleted")
        except ClientError as e:
            logger.warning(f"Remote delete of {novel_id} failed: {e}")

    async def wait_pending_deletes(self) -> None:
        """Await in-flight remote deletes (shutdown, tests)."""
        if self._pending_deletes:
            await asyncio.gather(*self._pending_deletes)
