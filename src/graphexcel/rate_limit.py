"""Simple in-memory rate limiting helpers."""

from __future__ import annotations

from collections import defaultdict, deque
import math
import threading
import time

from pydantic import BaseModel, Field


class RateLimit(BaseModel):
    max_requests: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by arbitrary strings."""

    def __init__(self, *, limit: RateLimit) -> None:
        self.limit = limit
        self._events: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, *, now: float | None = None) -> bool:
        timestamp = now if now is not None else time.monotonic()
        with self._lock:
            events = self._prune(key, timestamp)
            if len(events) >= self.limit.max_requests:
                return False
            events.append(timestamp)
            return True

    def retry_after(self, key: str, *, now: float | None = None) -> int:
        """Seconds until ``key`` may send another request."""
        timestamp = now if now is not None else time.monotonic()
        with self._lock:
            events = self._prune(key, timestamp)
            if len(events) < self.limit.max_requests:
                return 0
            return max(1, math.ceil(events[0] + self.limit.window_seconds - timestamp))

    def _prune(self, key: str, timestamp: float) -> deque[float]:
        window_start = timestamp - self.limit.window_seconds
        events = self._events[key]
        while events and events[0] <= window_start:
            events.popleft()
        return events


__all__ = ["InMemoryRateLimiter", "RateLimit"]
