"""Per-client sliding-window rate limiting for public endpoints.

State lives in process memory: it resets on restart and is not shared
between instances, so it only holds for a single-instance deployment.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

from fastapi import HTTPException, Request, status


class SlidingWindowLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = float("-inf")
        self._lock = threading.Lock()

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self._window:
                hits.popleft()
            if len(hits) >= self._max:
                return False
            hits.append(now)
            return True

    def _sweep(self, now: float) -> None:
        """Forget clients whose newest hit has left the window, at most once per window."""
        if now - self._last_sweep < self._window:
            return
        self._last_sweep = now
        idle = [key for key, hits in self._hits.items() if now - hits[-1] >= self._window]
        for key in idle:
            del self._hits[key]


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def enforce_ask_limit(request: Request) -> None:
    limiter: SlidingWindowLimiter = request.app.state.ask_limiter
    if not limiter.allow(client_key(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many questions. Please wait a minute and try again.",
        )
