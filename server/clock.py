"""
Per-client round clock.

When the round winner "clocks" the room, every other client starts its own
countdown from the moment it sees the clocked flag. There is no shared
deadline, so clients may freeze a little apart from each other.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from constants import CLOCK_DURATION_SECONDS

logger = logging.getLogger(__name__)


class RoundClock:
    """
    Countdown started locally when a round becomes clocked.

    Attributes:
        duration: Seconds from start to freeze.
        started_at: time_fn() reading at start, or None when idle.
    """

    def __init__(
        self,
        duration: float = CLOCK_DURATION_SECONDS,
        time_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.duration = duration
        self.time_fn = time_fn
        self.started_at: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def running(self) -> bool:
        return self.started_at is not None

    def start(self, on_expire: Optional[Callable[[], None]] = None) -> None:
        """
        Start the countdown (no-op if already running).

        Args:
            on_expire: Called once from the event loop when time runs out.
        """
        if self.running:
            return
        self.started_at = self.time_fn()
        if on_expire is not None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.duration, on_expire)
        logger.debug(f"Round clock started ({self.duration}s)")

    def stop(self) -> None:
        """Cancel the countdown and return to idle."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.started_at = None

    def remaining(self) -> Optional[float]:
        """Seconds left, 0 once expired, None when not running."""
        if self.started_at is None:
            return None
        elapsed = self.time_fn() - self.started_at
        return max(0.0, self.duration - elapsed)

    @property
    def expired(self) -> bool:
        left = self.remaining()
        return left is not None and left <= 0
