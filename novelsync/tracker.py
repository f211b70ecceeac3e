"""
Reading session time tracker.

Measures the real time a reader spends on a novel:
- 100ms ticks; each accepted tick adds the wall-clock delta since the last one
- Deltas <= 0 or >= 1s are dropped (clock jumps, suspend/resume)
- Auto-flush to a caller-supplied sink every 30s of active time
- Hard cap of 2h per session; hitting it flushes and pauses until restarted
- Unflushed time mirrored to a durable backup on every tick and adopted once
  on the next start for the same novel
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from .config import ClientSettings, get_settings
from .storage import BackupStore

logger = logging.getLogger(__name__)

TimeSink = Callable[[int], None]

# Reading-speed bounds (words per minute)
MIN_PLAUSIBLE_WPM = 50
MAX_PLAUSIBLE_WPM = 1500
MIN_TYPICAL_WPM = 100
MAX_TYPICAL_WPM = 1000
MIN_VALIDATION_MS = 5_000

MAX_TICK_DELTA_MS = 1_000


def reading_speed_wpm(elapsed_ms: int, word_count: int) -> float:
    """Words per minute implied by reading ``word_count`` words in ``elapsed_ms``."""
    if elapsed_ms <= 0:
        return float("inf")
    return word_count / (elapsed_ms / 60_000)


def validate_reading_speed(elapsed_ms: int, word_count: int) -> bool:
    """
    Anti-fraud check for a flushed reading-time delta.

    Deltas under 5 seconds and unknown word counts are not checked. Speeds
    outside 50-1500 WPM are rejected; speeds outside 100-1000 WPM are
    accepted but logged.

    Returns:
        True if the delta should be accepted.
    """
    if elapsed_ms < MIN_VALIDATION_MS or word_count <= 0:
        return True

    wpm = reading_speed_wpm(elapsed_ms, word_count)
    if wpm < MIN_PLAUSIBLE_WPM or wpm > MAX_PLAUSIBLE_WPM:
        logger.warning(
            f"Rejected reading time: {word_count} words in {elapsed_ms}ms ({wpm:.0f} WPM)"
        )
        return False
    if wpm < MIN_TYPICAL_WPM or wpm > MAX_TYPICAL_WPM:
        logger.info(f"Unusual reading speed accepted: {wpm:.0f} WPM")
    return True


class TrackerState(Enum):
    STOPPED = "stopped"
    ACTIVE = "active"
    PAUSED = "paused"


class SessionTimeTracker:
    """Accumulates active reading time for one novel at a time."""

    def __init__(
        self,
        backup: BackupStore,
        settings: Optional[ClientSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self.backup = backup
        self.tick_interval = settings.tracker_tick_seconds
        self.flush_interval_ms = int(settings.tracker_flush_interval_seconds * 1000)
        self.max_session_ms = int(settings.tracker_max_session_seconds * 1000)
        self._clock = clock

        self._state = TrackerState.STOPPED
        self._novel_id: Optional[str] = None
        self._sink: Optional[TimeSink] = None
        self._timer: Optional[asyncio.Task] = None
        self._last_tick: Optional[float] = None

        self._elapsed_ms = 0       # unflushed
        self._session_ms = 0       # all accepted time this session
        self._since_flush_ms = 0
        self._capped = False

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TrackerState.ACTIVE

    @property
    def novel_id(self) -> Optional[str]:
        return self._novel_id

    @property
    def capped(self) -> bool:
        """True once the session hit the duration cap; only start() resumes."""
        return self._capped

    def current_time(self) -> int:
        """Unflushed milliseconds, without stopping."""
        return self._elapsed_ms

    # === Lifecycle ===

    def start(self, novel_id: str, sink: TimeSink) -> None:
        """
        Start tracking ``novel_id``. Must be called from a running event loop.

        A paused session (including one stopped by the cap) is ended first.
        """
        if self._state is TrackerState.ACTIVE:
            logger.warning("Already tracking, ignoring start")
            return
        if self._state is TrackerState.PAUSED:
            self.stop()

        self._novel_id = novel_id
        self._sink = sink
        self._elapsed_ms = 0
        self._session_ms = 0
        self._since_flush_ms = 0
        self._capped = False

        backup_ms, backup_novel = self.backup.load_backup()
        if backup_novel == novel_id and backup_ms > 0:
            logger.info(f"Recovered {backup_ms}ms of unsaved reading time for {novel_id}")
            self._elapsed_ms = backup_ms
            self.backup.clear_backup()

        self._state = TrackerState.ACTIVE
        self._last_tick = self._clock()
        self._start_timer()
        logger.info(f"Started tracking novel {novel_id}")

    def pause(self) -> None:
        """Stop the timer and flush; resume() continues the same session."""
        if self._state is not TrackerState.ACTIVE:
            return
        self._cancel_timer()
        self.flush()
        self._state = TrackerState.PAUSED
        logger.info(f"Paused tracking of {self._novel_id} ({self._session_ms}ms this session)")

    def resume(self) -> bool:
        """Continue a paused session. Refused after the session cap."""
        if self._state is not TrackerState.PAUSED:
            return False
        if self._capped:
            logger.warning("Session cap reached; restart tracking to continue")
            return False
        self._state = TrackerState.ACTIVE
        self._last_tick = self._clock()
        self._start_timer()
        logger.info(f"Resumed tracking of {self._novel_id}")
        return True

    def stop(self) -> int:
        """
        Stop tracking, flushing whatever is unflushed.

        Returns:
            Milliseconds handed to the sink by this final flush.
        """
        if self._state is TrackerState.STOPPED:
            return 0

        self._cancel_timer()
        final = self.flush()
        if final:
            logger.info(f"Stopped. Final flush: {final}ms ({final // 1000}s)")

        self._state = TrackerState.STOPPED
        self._novel_id = None
        self._sink = None
        self._last_tick = None
        self._capped = False
        if self._elapsed_ms == 0:
            self.backup.clear_backup()
        self._elapsed_ms = 0
        return final

    # === Timer ===

    def _start_timer(self) -> None:
        self._timer = asyncio.get_running_loop().create_task(self._run())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def tick(self) -> None:
        """Account for the time since the previous tick."""
        if self._state is not TrackerState.ACTIVE or self._last_tick is None:
            return

        now = self._clock()
        delta = int((now - self._last_tick) * 1000)
        self._last_tick = now
        if delta <= 0 or delta >= MAX_TICK_DELTA_MS:
            return

        self._elapsed_ms += delta
        self._session_ms += delta
        self._since_flush_ms += delta

        if self._session_ms >= self.max_session_ms:
            logger.warning(
                f"Max session duration reached for {self._novel_id}; pausing until restarted"
            )
            self._capped = True
            self.pause()
            return

        if self._since_flush_ms >= self.flush_interval_ms:
            self.flush()

        if self._elapsed_ms > 0 and self._novel_id:
            self.backup.save_backup(self._elapsed_ms, self._novel_id)

    def flush(self) -> int:
        """
        Hand the accumulated time to the sink and reset the accumulator.

        Returns:
            Milliseconds flushed (0 if nothing was pending or the sink failed).
        """
        self._since_flush_ms = 0
        pending = self._elapsed_ms
        if pending <= 0 or self._sink is None:
            return 0

        self._elapsed_ms = 0
        try:
            self._sink(pending)
        except Exception as e:
            logger.error(f"Reading time sink failed, keeping {pending}ms: {e}")
            self._elapsed_ms += pending
            if self._novel_id:
                self.backup.save_backup(self._elapsed_ms, self._novel_id)
            return 0

        self.backup.clear_backup()
        logger.debug(f"Flushed {pending}ms for {self._novel_id}")
        return pending
