"""Per-key token-bucket rate limiting with a bounded LRU store."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import timedelta


class _TokenBucket:
    def __init__(self, period: float, burst: int, now: float) -> None:
        self.period = period
        self.burst = burst
        self.tokens = float(burst)
        self.last = now

    def allow(self, now: float) -> bool:
        if self.period <= 0:
            return True
        elapsed = max(0.0, now - self.last)
        tokens = min(float(self.burst), self.tokens + elapsed / self.period)
        if tokens < 1:
            return False
        self.tokens = tokens - 1
        self.last = now
        return True


class RateLimiter:
    """Allow at most ``limit`` events per ``period`` for each key.

    At most ``size`` keys are kept, least recently used dropped first;
    a size of zero or less means no bound.
    """

    def __init__(self, size: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._size = size
        self._clock = clock
        self._store: OrderedDict[str, _TokenBucket] = OrderedDict()
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, period: float | timedelta) -> bool:
        """Tell whether one more event for ``key`` is allowed now."""
        if isinstance(period, timedelta):
            period = period.total_seconds()
        seconds = float(period)
        now = self._clock()
        with self._lock:
            bucket = self._store.get(key)
            if bucket is None or bucket.period != seconds or bucket.burst != limit:
                bucket = self._store[key] = _TokenBucket(seconds, limit, now)
            self._store.move_to_end(key)
            while 0 < self._size < len(self._store):
                self._store.popitem(last=False)
            return bucket.allow(now)