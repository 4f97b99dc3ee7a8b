import asyncio
import time
from collections import defaultdict, deque


class RateLimiter:
    """In-memory sliding-window rate limiter keyed by device id for reading ingestion."""

    __slots__ = ("_max_requests", "_window_seconds", "_hits", "_lock")

    def __init__(self, max_requests: int, window_seconds: float):
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def is_rate_limited(self, device_id: str) -> bool:
        """Return True if the reading should be rejected; otherwise count it."""
        now = time.monotonic()
        cutoff = now - self._window_seconds
        async with self._lock:
            hits = self._hits[device_id]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                return True
            hits.append(now)
            return False


_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        from database import get_settings
        s = get_settings()
        _limiter = RateLimiter(s.rate_limit_requests, s.rate_limit_window_seconds)
    return _limiter


def reset_rate_limiter() -> None:
    global _limiter
    _limiter = None
