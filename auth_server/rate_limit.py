"""
Rate limiting. In-memory sliding window per key (e.g. per IP).
Used for POST /oauth2/authorize (login) and POST /oauth2/token to slow down brute force.
"""
import math
import threading
import time
from typing import Callable

from fastapi.responses import JSONResponse

_WINDOW_SECONDS = 60


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int = _WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str, limit: int) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1).
        """
        if limit <= 0:
            return True, None
        now = self._clock()
        with self._lock:
            timestamps = self._store.setdefault(key, [])
            cutoff = now - self.window_seconds
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= limit:
                retry_after = max(1, math.ceil(self.window_seconds - (now - timestamps[0])))
                return False, retry_after
            timestamps.append(now)
            return True, None

    def reset(self) -> None:
        with self._lock:
            self._store.clear()


login_limiter = SlidingWindowLimiter()
token_limiter = SlidingWindowLimiter()


def too_many_requests(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "error_description": "Too many requests"},
        headers={"Retry-After": str(retry_after)},
    )
