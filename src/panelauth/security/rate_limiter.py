"""
PanelAuth Rate Limiter
Per-key fixed-window token buckets shared by every request thread.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from panelauth.core.config import Settings, get_settings
from panelauth.core.logging import LoggerMixin
from .errors import RateLimitExceeded


@dataclass
class _Bucket:
    tokens: int
    window_start: float


def rate_limit_key(ip: str, user_id: Optional[str] = None) -> str:
    """Authenticated callers are throttled per user, everyone else per IP"""
    if user_id:
        return f"user:{user_id}"
    return ip


class RateLimiter(LoggerMixin):
    """
    Token bucket per key, refilled to capacity when its window elapses.

    A single lock guards the bucket map; stale buckets are dropped
    opportunistically once more than two windows have passed since the
    last sweep.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window = float(window_seconds)
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RateLimiter":
        settings = settings or get_settings()
        return cls(settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._cleanup(now)

            bucket = self._buckets.get(key)
            if bucket is None or now - bucket.window_start >= self.window:
                self._buckets[key] = _Bucket(tokens=self.max_requests - 1, window_start=now)
                return True

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return True

            return False

    def check(self, key: str) -> None:
        """Like allow() but raises RateLimitExceeded when denied"""
        if not self.allow(key):
            retry_after = self.retry_after(key)
            self.logger.warning(f"Rate limit exceeded for {key}")
            raise RateLimitExceeded(retry_after=retry_after, key=key)

    def remaining(self, key: str) -> int:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or self._clock() - bucket.window_start >= self.window:
                return self.max_requests
            return bucket.tokens

    def retry_after(self, key: str) -> float:
        """Seconds until the key's window resets"""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0.0
            return max(0.0, bucket.window_start + self.window - self._clock())

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _cleanup(self, now: float) -> None:
        # Caller holds the lock
        stale_after = 2 * self.window
        if now - self._last_cleanup <= stale_after:
            return

        stale = [k for k, b in self._buckets.items() if now - b.window_start > stale_after]
        for key in stale:
            del self._buckets[key]
        self._last_cleanup = now

        if stale:
            self.logger.debug(f"Rate limiter dropped {len(stale)} stale buckets")
