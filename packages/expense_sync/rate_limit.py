"""Sliding-window admission control for AI requests.

One :class:`SlidingWindowRateLimiter` is shared by every caller that talks to
the provider (sync extraction and chat). ``admit()`` blocks the calling thread
until one more request fits in the trailing window, then records it.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

from .logging_setup import get_logger

_logger = get_logger("expense_sync.rate_limit")


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class SlidingWindowRateLimiter:
    """At most ``max_requests`` admissions in any trailing ``window_ms``.

    Parameters
    ----------
    max_requests:
        Window capacity.
    window_ms:
        Window length in milliseconds.
    clock:
        Millisecond clock; monotonic by default. Tests inject a fake.
    sleep:
        Sleep function taking seconds; ``time.sleep`` by default.

    Notes
    -----
    The lock is held while waiting. Admissions are therefore strictly
    serialized, which is what keeps two waiting callers from both claiming the
    same freed slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        clock: Callable[[], float] = monotonic_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_ms
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def admit(self) -> float:
        """Wait until a request is allowed, record it, and return the wait in ms."""

        with self._lock:
            now = self._clock()
            self._evict(now)
            waited = 0.0
            if len(self._timestamps) >= self.max_requests:
                oldest = self._timestamps[0]
                wait_ms = self.window_ms - (now - oldest)
                if wait_ms > 0:
                    _logger.info(
                        "rate_limit:wait window=%d max=%d wait_ms=%.0f",
                        len(self._timestamps),
                        self.max_requests,
                        wait_ms,
                    )
                    self._sleep(wait_ms / 1000.0)
                    waited = wait_ms
                now = self._clock()
                self._evict(now)
            self._timestamps.append(now)
            return waited

    def window_size(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._timestamps)

    def seed(self, timestamps_ms: list[float]) -> None:
        """Replace the window contents; used to restore state and in tests."""

        with self._lock:
            self._timestamps = deque(sorted(timestamps_ms))


__all__ = ["SlidingWindowRateLimiter", "monotonic_ms"]
