"""
SQLite-backed local storage.

One database holds the reading progress table, the stored credentials and the
session tracker's crash-recovery slot. Every operation opens its own
connection; a store-wide lock serializes read-modify-write sequences so a
tracker flush and a sync merge never interleave on the same record.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ContextManager, Iterable, Iterator, Optional, Protocol

from .config import ClientSettings
from .models import ProgressRecord, clamp_fraction

logger = logging.getLogger(__name__)


# =============================================================================
# Capability Interfaces
# =============================================================================

class ProgressStore(Protocol):
    """Operations the repository and sync engine need from persistence."""

    def locked(self) -> ContextManager[Any]: ...

    def get(self, novel_id: str) -> Optional[ProgressRecord]: ...

    def all(self) -> list[ProgressRecord]: ...

    def upsert(self, record: ProgressRecord) -> None: ...

    def save_all(self, records: Iterable[ProgressRecord]) -> int: ...

    def delete(self, novel_id: str) -> bool: ...

    def increment_unsynced_delta(self, novel_id: str, milliseconds: int) -> bool: ...


class BackupStore(Protocol):
    """Durable slot for unflushed tracker time."""

    def load_backup(self) -> tuple[int, Optional[str]]: ...

    def save_backup(self, milliseconds: int, novel_id: str) -> None: ...

    def clear_backup(self) -> None: ...


# =============================================================================
# Local Store (SQLite)
# =============================================================================

class LocalStore:
    """SQLite store for progress records, credentials and tracker backup."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS reading_progress (
        novel_id TEXT PRIMARY KEY,
        novel_title TEXT NOT NULL DEFAULT '',
        novel_cover_image TEXT NOT NULL DEFAULT '',
        author_name TEXT NOT NULL DEFAULT '',
        current_chapter_id TEXT NOT NULL,
        current_chapter_order INTEGER NOT NULL,
        current_chapter_title TEXT NOT NULL DEFAULT '',
        current_position INTEGER NOT NULL DEFAULT 0,
        scroll_percentage REAL,
        segment_index INTEGER NOT NULL DEFAULT 0,
        total_chapters_read INTEGER NOT NULL DEFAULT 0,
        total_chapters INTEGER NOT NULL DEFAULT 0,
        last_read_date TEXT NOT NULL,
        total_reading_time INTEGER NOT NULL DEFAULT 0,
        unsynced_delta INTEGER NOT NULL DEFAULT 0 CHECK (unsynced_delta >= 0)
    );

    CREATE TABLE IF NOT EXISTS credentials (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        access_token TEXT,
        refresh_token TEXT
    );

    CREATE TABLE IF NOT EXISTS session_backup (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_reading_progress_last_read
        ON reading_progress(last_read_date);
    """

    COLUMNS = (
        "novel_id", "novel_title", "novel_cover_image", "author_name",
        "current_chapter_id", "current_chapter_order", "current_chapter_title",
        "current_position", "scroll_percentage", "segment_index",
        "total_chapters_read", "total_chapters", "last_read_date",
        "total_reading_time", "unsynced_delta",
    )

    BACKUP_TIME_KEY = "unflushedTimeMs"
    BACKUP_NOVEL_KEY = "activeNovelId"

    def __init__(
        self,
        db_path: Path,
        timeout: float = 30.0,
        connect_attempts: int = 5,
        connect_backoff: float = 0.1,
    ):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.connect_attempts = max(1, connect_attempts)
        self.connect_backoff = connect_backoff
        self._lock = threading.RLock()
        self._init_db()

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "LocalStore":
        return cls(
            settings.db_path,
            timeout=settings.db_timeout_seconds,
            connect_attempts=settings.db_connect_attempts,
            connect_backoff=settings.db_connect_backoff_seconds,
        )

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        """Open a connection, backing off while another process holds the write lock."""
        attempt = 1
        while True:
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
            except sqlite3.OperationalError as e:
                if "database is locked" not in str(e) or attempt >= self.connect_attempts:
                    raise
                delay = self.connect_backoff * (2 ** (attempt - 1))
                logger.debug(f"Database locked, retrying in {delay:.2f}s ({attempt}/{self.connect_attempts})")
                time.sleep(delay)
                attempt += 1
                continue
            conn.row_factory = sqlite3.Row
            return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and commit (or roll back) as one unit."""
        with self._lock, self._get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def locked(self) -> ContextManager[Any]:
        """Critical section spanning several store calls (re-entrant)."""
        return self._lock

    # === Row Mapping ===

    def _row_to_record(self, row: sqlite3.Row) -> ProgressRecord:
        return ProgressRecord(
            novel_id=row["novel_id"],
            novel_title=row["novel_title"],
            novel_cover_image=row["novel_cover_image"],
            author_name=row["author_name"],
            current_chapter_id=row["current_chapter_id"],
            current_chapter_order=row["current_chapter_order"],
            current_chapter_title=row["current_chapter_title"],
            current_position=row["current_position"],
            scroll_percentage=clamp_fraction(row["scroll_percentage"]),
            segment_index=row["segment_index"],
            total_chapters_read=row["total_chapters_read"],
            total_chapters=row["total_chapters"],
            last_read_date=datetime.fromisoformat(row["last_read_date"]),
            total_reading_time=row["total_reading_time"],
            unsynced_delta=row["unsynced_delta"],
        )

    def _record_values(self, record: ProgressRecord) -> tuple:
        return (
            record.novel_id,
            record.novel_title,
            record.novel_cover_image,
            record.author_name,
            record.current_chapter_id,
            record.current_chapter_order,
            record.current_chapter_title,
            record.current_position,
            record.scroll_percentage,
            record.segment_index,
            record.total_chapters_read,
            record.total_chapters,
            record.last_read_date.astimezone(timezone.utc).isoformat(),
            record.total_reading_time,
            max(0, record.unsynced_delta),
        )

    def _upsert(self, conn: sqlite3.Connection, records: Iterable[ProgressRecord]) -> int:
        placeholders = ", ".join("?" for _ in self.COLUMNS)
        cursor = conn.executemany(
            f"INSERT OR REPLACE INTO reading_progress ({', '.join(self.COLUMNS)}) "
            f"VALUES ({placeholders})",
            [self._record_values(r) for r in records],
        )
        return cursor.rowcount

    # === Progress Operations ===

    def get(self, novel_id: str) -> Optional[ProgressRecord]:
        with self._lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM reading_progress WHERE novel_id = ?",
                (novel_id,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def all(self) -> list[ProgressRecord]:
        """All records, most recently read first."""
        with self._lock, self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM reading_progress ORDER BY last_read_date DESC"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def upsert(self, record: ProgressRecord) -> None:
        with self.transaction() as conn:
            self._upsert(conn, [record])

    def save_all(self, records: Iterable[ProgressRecord]) -> int:
        """Write every record in a single transaction."""
        records = list(records)
        if not records:
            return 0
        with self.transaction() as conn:
            self._upsert(conn, records)
        logger.debug(f"Persisted {len(records)} progress records")
        return len(records)

    def delete(self, novel_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM reading_progress WHERE novel_id = ?",
                (novel_id,),
            )
            return cursor.rowcount > 0

    def increment_unsynced_delta(self, novel_id: str, milliseconds: int) -> bool:
        """Atomically add tracked time to a record's pending delta."""
        if milliseconds <= 0:
            return False
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE reading_progress SET unsynced_delta = unsynced_delta + ? "
                "WHERE novel_id = ?",
                (milliseconds, novel_id),
            )
            return cursor.rowcount > 0

    # === Credential Operations ===

    def get_access_token(self) -> Optional[str]:
        with self._lock, self._get_connection() as conn:
            row = conn.execute("SELECT access_token FROM credentials WHERE id = 1").fetchone()
        return row["access_token"] if row else None

    def get_refresh_token(self) -> Optional[str]:
        with self._lock, self._get_connection() as conn:
            row = conn.execute("SELECT refresh_token FROM credentials WHERE id = 1").fetchone()
        return row["refresh_token"] if row else None

    def save_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Save the access token; keep the current refresh token unless rotated."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO credentials (id, access_token, refresh_token)
                VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, credentials.refresh_token)
                """,
                (access_token, refresh_token),
            )

    def clear_tokens(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM credentials WHERE id = 1")
        logger.debug("Cleared stored credentials")

    # === Tracker Backup Operations ===

    def load_backup(self) -> tuple[int, Optional[str]]:
        """Return (unflushed milliseconds, novel id) from the backup slot."""
        with self._lock, self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM session_backup").fetchall()
        values = {row["key"]: row["value"] for row in rows}
        try:
            milliseconds = int(values.get(self.BACKUP_TIME_KEY, 0))
        except ValueError:
            milliseconds = 0
        return milliseconds, values.get(self.BACKUP_NOVEL_KEY) or None

    def save_backup(self, milliseconds: int, novel_id: str) -> None:
        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO session_backup (key, value) VALUES (?, ?)",
                [
                    (self.BACKUP_TIME_KEY, str(milliseconds)),
                    (self.BACKUP_NOVEL_KEY, novel_id),
                ],
            )

    def clear_backup(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM session_backup")
