"""
Refresh coordination: single-flight plus a minimum interval between attempts.

Every caller that hits an expired or rejected credential goes through
``RefreshCoordinator.perform_refresh``. At most one refresh runs at a time,
concurrent callers share its outcome, and a new attempt inside the rate-limit
window returns ``False`` without touching the network.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

RefreshFn = Callable[[], Awaitable[bool]]


class RefreshCoordinator:
    """Deduplicates and rate-limits credential refresh attempts."""

    def __init__(
        self,
        min_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._last_attempt: Optional[float] = None
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def last_attempt(self) -> Optional[float]:
        return self._last_attempt

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight is not None

    async def perform_refresh(self, refresh_fn: RefreshFn) -> bool:
        """
        Run ``refresh_fn`` unless a refresh is already running or one was
        attempted too recently.

        Args:
            refresh_fn: Coroutine function performing the actual refresh call

        Returns:
            The refresh outcome. Exceptions from ``refresh_fn`` count as False.
        """
        # Joiners share the in-flight outcome; the rate limit only gates new attempts.
        if self._in_flight is not None:
            logger.debug("Refresh already in flight, awaiting shared result")
            return await asyncio.shield(self._in_flight)

        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self.min_interval:
            logger.warning(
                f"Refresh rate-limited: last attempt {now - self._last_attempt:.1f}s ago "
                f"(minimum {self.min_interval:.0f}s)"
            )
            return False

        self._last_attempt = now
        task = asyncio.ensure_future(self._run(refresh_fn))
        self._in_flight = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight is task and task.done():
                self._in_flight = None
            elif self._in_flight is task:
                # The caller was cancelled while the refresh keeps running;
                # release the slot once it settles.
                task.add_done_callback(lambda _: self._release(task))

    def _release(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _run(self, refresh_fn: RefreshFn) -> bool:
        try:
            return bool(await refresh_fn())
        except Exception as e:
            logger.error(f"Token refresh raised: {e}")
            return False

    def reset(self) -> None:
        """Forget the last attempt (e.g. after a fresh login)."""
        self._last_attempt = None
