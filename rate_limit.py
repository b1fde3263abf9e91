# rate_limit.py
# Fixed-window request counter over an injected store (in-process by default).

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryRateLimitStore:
    """Process-local store: key -> (count, window_reset_at)."""

    def __init__(self):
        self._data: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def incr(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        with self._lock:
            count, reset_at = self._data.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._data[key] = (count, reset_at)
            return count, reset_at

    def purge(self, now: float) -> int:
        with self._lock:
            expired = [k for k, (_c, reset_at) in self._data.items() if reset_at <= now]
            for k in expired:
                del self._data[k]
            return len(expired)


class RateLimiter:
    def __init__(self, limit: int, window_seconds: float,
                 store: Optional[MemoryRateLimitStore] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.limit = int(limit)
        self.window_seconds = float(window_seconds)
        self.store = store if store is not None else MemoryRateLimitStore()
        self.clock = clock or time.time
        self._next_purge = 0.0

    def check(self, key: str) -> Tuple[bool, int, float]:
        """Count one request. Returns (allowed, remaining, seconds_until_reset)."""
        now = self.clock()
        # expired windows are dropped at most once per window
        if now >= self._next_purge:
            self.store.purge(now)
            self._next_purge = now + self.window_seconds
        count, reset_at = self.store.incr(key, self.window_seconds, now)
        remaining = max(0, self.limit - count)
        return count <= self.limit, remaining, max(0.0, reset_at - now)
