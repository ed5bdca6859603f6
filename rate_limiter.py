# rate_limiter.py
import logging
import math
import threading
from dataclasses import dataclass
from datetime import timedelta

from models import JobKind, utc_now

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5


@dataclass
class RateLimitWindow:
    window_start: object
    count: int
    limit: object  # int, or None for unlimited


class RateLimiter:
    """
    Fixed-window limiter, one counter per job kind.

    Windows are aligned to `origin` (process start), not sliding: the window for
    `now` starts at origin + k * window_seconds for the largest k with start <= now.
    """

    def __init__(self, default_limit, window_seconds=DEFAULT_WINDOW_SECONDS, limits=None, origin=None, clock=utc_now):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.default_limit = default_limit
        self.window = timedelta(seconds=window_seconds)
        self.limits = {JobKind.parse(k): v for k, v in (limits or {}).items()}
        self.clock = clock
        self.origin = origin or clock()
        self._windows = {}
        self._lock = threading.Lock()

    def limit_for(self, kind):
        kind = JobKind.parse(kind)
        return self.limits.get(kind, self.default_limit)

    def _window_start(self, now):
        index = math.floor((now - self.origin) / self.window)
        return self.origin + index * self.window

    def _active(self, kind, now):
        start = self._window_start(now)
        window = self._windows.get(kind)
        if window is None or window.window_start != start:
            window = RateLimitWindow(window_start=start, count=0, limit=self.limit_for(kind))
            self._windows[kind] = window
        return window

    def try_consume(self, kind, now=None):
        kind = JobKind.parse(kind)
        now = now or self.clock()
        with self._lock:
            window = self._active(kind, now)
            if window.limit is not None and window.count >= window.limit:
                logger.debug("Rate limit reached for %s (%s/%s in window starting %s)",
                             kind.value, window.count, window.limit, window.window_start.isoformat())
                return False
            window.count += 1
            return True

    def snapshot(self):
        with self._lock:
            return {
                kind.value: {
                    "window_start": w.window_start.isoformat(),
                    "count": w.count,
                    "limit": w.limit,
                }
                for kind, w in self._windows.items()
            }
