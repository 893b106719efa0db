"""Per-sender fixed-window rate limiting."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from config import RATE_LIMIT_PER_MINUTE, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Message count for one sender inside the current window."""
    count: int
    reset_time: float


class RateLimiter:
    """
    Counts messages per sender inside a rolling one-minute window.

    Windows are reset lazily: the first check after `reset_time` starts a
    fresh window. The limiter never suspends, so `try_acquire` is atomic on
    the event loop.
    """

    def __init__(
        self,
        capacity: int = RATE_LIMIT_PER_MINUTE,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._windows: Dict[str, RateWindow] = {}
        self._next_sweep = self._clock() + window_seconds
        self.dropped_count = 0

    def _current_window(self, sender: str) -> RateWindow:
        now = self._clock()
        if now >= self._next_sweep:
            self.prune_expired(now)
        window = self._windows.get(sender)
        if window is None or now >= window.reset_time:
            window = RateWindow(count=0, reset_time=now + self.window_seconds)
            self._windows[sender] = window
        return window

    def is_limited(self, sender: str) -> bool:
        """Return True if the sender has used up the current window."""
        return self._current_window(sender).count >= self.capacity

    def try_acquire(self, sender: str) -> bool:
        """
        Count one message for the sender if the window has room.

        Returns:
            True if the message may be processed, False if it must be dropped
        """
        window = self._current_window(sender)
        if window.count >= self.capacity:
            self.dropped_count += 1
            logger.debug(
                f"Rate limit hit for {sender}: {window.count}/{self.capacity} "
                f"in {self.window_seconds}s window"
            )
            return False
        window.count += 1
        return True

    def prune_expired(self, now: Optional[float] = None) -> int:
        """
        Drop windows that have already expired.

        Runs at most once per window period from the hot path, so the map only
        holds senders seen within roughly the last two windows.

        Returns:
            Number of windows removed
        """
        now = self._clock() if now is None else now
        expired = [sender for sender, window in self._windows.items() if now >= window.reset_time]
        for sender in expired:
            del self._windows[sender]
        self._next_sweep = now + self.window_seconds
        return len(expired)

    def limited_count(self) -> int:
        """Number of senders currently at capacity."""
        now = self._clock()
        self.prune_expired(now)
        return sum(
            1 for window in self._windows.values()
            if now < window.reset_time and window.count >= self.capacity
        )

    def tracked_count(self) -> int:
        return len(self._windows)

    def reset(self, sender: Optional[str] = None) -> None:
        """Forget one sender's window, or every window when no sender is given."""
        if sender is None:
            self._windows.clear()
        else:
            self._windows.pop(sender, None)
