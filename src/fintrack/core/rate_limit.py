from __future__ import annotations

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Capacity-1 token bucket refilled every `interval_seconds`.

    Every outbound call goes through acquire(), so one process never issues
    more than one request per interval. There is no burst allowance and no
    background timer: the next refill time is computed on demand.
    """

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_token_at: float | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> float:
        """Block until the token is available. Returns the seconds waited."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Rate limiter is closed")

            now = self._clock()
            waited = 0.0
            if self._next_token_at is not None and now < self._next_token_at:
                waited = self._next_token_at - now
                self._sleep(waited)
                now = self._clock()

            # the next token is counted from the moment this one was taken
            self._next_token_at = max(now, self._next_token_at or now) + self.interval_seconds
            return waited

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._next_token_at = None

    def __enter__(self) -> "RateLimiter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
