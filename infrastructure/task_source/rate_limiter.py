import time
from threading import Lock
from typing import Any, Mapping, Optional


class RateLimiter:
    """Thread-safe rate limiter driven by Retry-After / X-RateLimit-* headers."""

    def __init__(self, clock=time.time, sleep=time.sleep) -> None:
        self._lock = Lock()
        self._next_ts = 0.0
        self._clock = clock
        self._sleep = sleep
        self.last_remaining: Optional[int] = None
        self.last_reset_epoch: Optional[float] = None
        self.last_wait: float = 0.0

    def acquire(self) -> None:
        while True:
            with self._lock:
                wait = self._next_ts - self._clock()
            if wait <= 0:
                return
            self._sleep(min(wait, 2.0))

    def update(self, headers: Mapping[str, Any], status_code: Optional[int] = None) -> None:
        remaining = _header(headers, "X-RateLimit-Remaining")
        reset = _header(headers, "X-RateLimit-Reset")
        retry_after = _header(headers, "Retry-After")
        with self._lock:
            now = self._clock()
            if retry_after is not None:
                try:
                    self._next_ts = max(self._next_ts, now + float(retry_after))
                except ValueError:
                    self._next_ts = max(self._next_ts, now + 60)
            elif status_code == 429:
                self._next_ts = max(self._next_ts, now + 60)
            if remaining is not None:
                try:
                    self.last_remaining = int(remaining)
                except ValueError:
                    self.last_remaining = None
                if self.last_remaining is not None and self.last_remaining <= 1:
                    reset_ts = _as_float(reset)
                    if reset_ts and reset_ts > now:
                        self._next_ts = max(self._next_ts, reset_ts)
                    else:
                        self._next_ts = max(self._next_ts, now + 60)
            reset_ts = _as_float(reset)
            if reset_ts:
                self.last_reset_epoch = reset_ts
            self.last_wait = max(0.0, self._next_ts - now)


def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return None if value is None else str(value)


def _as_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
