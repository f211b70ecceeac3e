"""
Pydantic schemas for the reading backend wire format.

The backend speaks camelCase JSON and wraps every payload in an
``{ok, message, data}`` envelope.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class WireModel(BaseModel):
    """Base for all wire schemas: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Envelopes
# =============================================================================

class ApiResponse(WireModel, Generic[T]):
    """Generic wrapper for all API responses."""
    ok: bool
    message: Optional[str] = None
    data: Optional[T] = None


class ErrorEnvelope(WireModel):
    """Body of a 4xx/5xx response."""
    message: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Auth
# =============================================================================

class UserInfo(WireModel):
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    profile_image: Optional[str] = None


class AuthResponse(WireModel):
    """Login and refresh response."""
    access_token: str = Field(validation_alias=AliasChoices("accessToken", "token", "access_token"))
    refresh_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )
    user: Optional[UserInfo] = None


# =============================================================================
# Reading History
# =============================================================================

class ProgressDelta(WireModel):
    """
    One upload entry.

    ``total_reading_time`` carries the *unsynced delta*, not the cumulative
    total; the server adds it to its own running total.
    """
    novel_id: str
    current_chapter: int
    current_position: int
    total_chapters_read: int
    last_read_time: int = Field(..., description="Milliseconds since epoch")
    total_reading_time: int = Field(..., ge=0, description="Delta in milliseconds")
    current_chapter_id: Optional[str] = None
    scroll_percentage: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    segment_index: int = 0


class SyncHistoryRequest(WireModel):
    history: list[ProgressDelta]


class RemoteProgress(WireModel):
    """A history record as returned by the server, enriched with novel metadata."""
    novel_id: str
    current_chapter: int = 0
    current_position: int = 0
    total_chapters_read: int = 0
    last_read_time: datetime
    total_reading_time: int = Field(default=0, description="String-encoded integer on the wire")
    current_chapter_id: Optional[str] = None
    current_chapter_title: Optional[str] = None
    scroll_percentage: Optional[float] = None
    segment_index: int = 0

    id: Optional[str] = None
    user_id: Optional[str] = None

    novel_title: Optional[str] = None
    novel_cover_image: Optional[str] = None
    novel_status: Optional[str] = None
    novel_chapters_count: Optional[int] = None
    author_name: Optional[str] = None
    author_slug: Optional[str] = None

    @field_validator("last_read_time")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Timestamps without an offset are UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def has_chapter(self) -> bool:
        return bool(self.current_chapter_id and self.current_chapter_id.strip())

    @property
    def last_read_millis(self) -> int:
        return int(self.last_read_time.timestamp() * 1000)


class SyncHistoryResponse(WireModel):
    synced: int
    failed: int
    details: list[RemoteProgress] = Field(default_factory=list)


# =============================================================================
# Chapter Content
# =============================================================================

class SegmentType(str, Enum):
    HEADING = "heading"
    PARAGRAPH = "paragraph"


class SpanStyle(str, Enum):
    BOLD = "bold"
    ITALIC = "italic"
    UNDERLINE = "underline"
    STRIKETHROUGH = "strikethrough"
    HIGHLIGHT = "highlight"


class ContentSpan(WireModel):
    style: SpanStyle
    start: int
    end: int


class ContentSegment(WireModel):
    type: SegmentType
    content: str
    level: Optional[int] = None
    spans: list[ContentSpan] = Field(default_factory=list)


class ChapterContent(WireModel):
    """A chapter's renderable content."""
    id: str
    title: str
    content_segments: list[ContentSegment] = Field(default_factory=list)
    word_count: int = 0
    reading_time_minutes: int = 0
    novel_id: str
    chapter_order: int
    previous_chapter_id: Optional[str] = None
    next_chapter_id: Optional[str] = None

    @property
    def has_previous_chapter(self) -> bool:
        return self.previous_chapter_id is not None

    @property
    def has_next_chapter(self) -> bool:
        return self.next_chapter_id is not None
