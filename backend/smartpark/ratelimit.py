# backend/smartpark/ratelimit.py
import logging
import time
from collections import deque
from typing import Deque, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window request counter keyed by client address.

    In-process only: each server replica enforces its own window.
    """

    def __init__(self, window_seconds: float, max_requests: int):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._hits: Dict[str, Deque[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0 and self.window_seconds > 0

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """Record one request for `key`. Returns False once the window is full."""
        if not self.enabled:
            return True
        now = time.monotonic() if now is None else now
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_requests:
            logger.info(f"RATE_LIMIT: {key} over {self.max_requests} requests per {self.window_seconds}s")
            return False
        hits.append(now)
        self._prune(now)
        return True

    def reset(self) -> None:
        self._hits.clear()

    def _prune(self, now: float) -> None:
        # forget clients whose newest hit has left the window
        if len(self._hits) < 1024:
            return
        stale = [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_seconds]
        for k in stale:
            del self._hits[k]
