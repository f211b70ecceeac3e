"""
Domain models for reading progress, sync outcomes and session events.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .schemas import ProgressDelta, RemoteProgress

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def clamp_fraction(value: Optional[float]) -> Optional[float]:
    """Bound a scroll fraction to 0.0-1.0. None and NaN mean unknown."""
    if value is None or math.isnan(value):
        return None
    return min(1.0, max(0.0, value))


# =============================================================================
# Reading Progress
# =============================================================================

@dataclass
class ProgressRecord:
    """
    Local reading progress for one novel.

    Reading time uses two counters: ``total_reading_time`` is the server's
    authoritative total and is only ever replaced from a download, while
    ``unsynced_delta`` accumulates locally tracked milliseconds until the
    server confirms it has absorbed them.
    """
    novel_id: str
    current_chapter_id: str
    current_chapter_order: int
    current_chapter_title: str = ""
    novel_title: str = ""
    novel_cover_image: str = ""
    author_name: str = ""

    current_position: int = 0
    scroll_percentage: Optional[float] = None
    segment_index: int = 0

    total_chapters_read: int = 1
    total_chapters: int = 0

    last_read_date: datetime = field(default_factory=utcnow)

    total_reading_time: int = 0
    unsynced_delta: int = 0

    @property
    def last_read_time(self) -> int:
        """Last local mutation as milliseconds since epoch."""
        return to_millis(self.last_read_date)

    @property
    def progress_percentage(self) -> float:
        if self.total_chapters <= 0:
            return 0.0
        return self.current_chapter_order / self.total_chapters

    def add_reading_time(self, milliseconds: int) -> None:
        """Accumulate locally tracked time; sent as a delta on the next sync."""
        if milliseconds <= 0:
            return
        self.unsynced_delta += milliseconds
        logger.debug(
            f"Added {milliseconds}ms to unsynced delta of {self.novel_id} "
            f"(now {self.unsynced_delta}ms)"
        )

    def update_total_reading_time_from_backend(self, backend_time: int) -> None:
        if backend_time < 0:
            return
        self.total_reading_time = backend_time

    def apply_remote_position(self, remote: RemoteProgress) -> None:
        """Take the remote replica's navigation fields (last-write-wins)."""
        self.current_chapter_id = remote.current_chapter_id or self.current_chapter_id
        self.current_chapter_order = remote.current_chapter
        if remote.current_chapter_title:
            self.current_chapter_title = remote.current_chapter_title
        self.current_position = remote.current_position
        self.scroll_percentage = clamp_fraction(remote.scroll_percentage)
        self.segment_index = remote.segment_index
        self.total_chapters_read = remote.total_chapters_read
        self.last_read_date = remote.last_read_time

    def apply_remote_metadata(self, remote: RemoteProgress) -> None:
        """Fill denormalized novel metadata when the server provides it."""
        if remote.novel_title:
            self.novel_title = remote.novel_title
        if remote.novel_cover_image:
            self.novel_cover_image = remote.novel_cover_image
        if remote.author_name:
            self.author_name = remote.author_name
        if remote.novel_chapters_count:
            self.total_chapters = remote.novel_chapters_count

    @classmethod
    def from_remote(cls, remote: RemoteProgress) -> "ProgressRecord":
        """Seed a new local record from a downloaded one."""
        record = cls(
            novel_id=remote.novel_id,
            current_chapter_id=remote.current_chapter_id or "",
            current_chapter_order=remote.current_chapter,
        )
        record.apply_remote_position(remote)
        record.apply_remote_metadata(remote)
        record.total_reading_time = max(0, remote.total_reading_time)
        record.unsynced_delta = 0
        return record

    def to_delta(self) -> ProgressDelta:
        """Upload entry carrying the unsynced delta, never the total."""
        return ProgressDelta(
            novel_id=self.novel_id,
            current_chapter=self.current_chapter_order,
            current_position=self.current_position,
            total_chapters_read=self.total_chapters_read,
            last_read_time=self.last_read_time,
            total_reading_time=self.unsynced_delta,
            current_chapter_id=self.current_chapter_id or None,
            scroll_percentage=self.scroll_percentage,
            segment_index=self.segment_index,
        )


# =============================================================================
# Sync State
# =============================================================================

class SyncState(Enum):
    """State of the progress sync engine."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class SyncStatus:
    state: SyncState = SyncState.IDLE
    synced: int = 0
    failed: int = 0
    message: Optional[str] = None


@dataclass
class SyncResult:
    """Result of a full sync."""
    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_success(self) -> bool:
        return self.failed == 0

    @property
    def has_partial_success(self) -> bool:
        return self.uploaded > 0 and self.failed > 0


# =============================================================================
# Session Events
# =============================================================================

class SessionExpiredReason(str, Enum):
    NO_REFRESH_TOKEN = "no_refresh_token"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    INVALID_RESPONSE = "invalid_response"
    REFRESH_ERROR = "refresh_error"


@dataclass(frozen=True)
class SessionExpired:
    """Emitted when the session cannot be recovered and the user must log in."""
    reason: SessionExpiredReason
    occurred_at: datetime = field(default_factory=utcnow)
