"""Outbound rate limiter for the Ortto API.

Fixed-window counter combined with a minimum spacing between requests:

    - at most ``max_requests`` requests start inside any ``window_seconds``
      window (the counter resets when the window rolls over);
    - consecutive requests start at least ``min_interval`` seconds apart.

The limiter is an explicit object handed to the request queue rather than
module state, so every test (and every client) owns its own counters. Clock
and sleep are injectable for the same reason.

Usage pattern:
    limiter = UpstreamRateLimiter.from_config()
    await limiter.acquire()      # suspends until a request may start
    ...
    limiter.reset_window()       # after a 429, start counting afresh

Return semantics:
    snapshot() -> {
        'requests_in_window': int,
        'max_requests_per_window': int,
        'window_remaining_seconds': float,
        'last_request_age_seconds': float | None,
    }
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from app.config import UPSTREAM_RATE_LIMIT

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class UpstreamRateLimiter:
    def __init__(
        self,
        *,
        min_interval: float,
        max_requests: int,
        window_seconds: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.min_interval = float(min_interval)
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._window_start = clock()
        self._count = 0
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, **overrides) -> "UpstreamRateLimiter":
        params = {
            "min_interval": float(UPSTREAM_RATE_LIMIT["min_interval_seconds"]),
            "max_requests": int(UPSTREAM_RATE_LIMIT["max_requests_per_window"]),
            "window_seconds": float(UPSTREAM_RATE_LIMIT["window_seconds"]),
        }
        params.update(overrides)
        return cls(**params)

    def _roll_window(self, now: float) -> None:
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._count = 0

    async def acquire(self) -> None:
        """Suspend until a request is allowed to start, then count it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._roll_window(now)
                wait = 0.0
                if self._count >= self.max_requests:
                    wait = self._window_start + self.window_seconds - now
                elif self._last_request is not None:
                    wait = self._last_request + self.min_interval - now
                if wait <= 0:
                    break
                await self._sleep(wait)
            self._count += 1
            self._last_request = self._clock()

    def reset_window(self) -> None:
        self._window_start = self._clock()
        self._count = 0

    @property
    def requests_in_window(self) -> int:
        return self._count

    def snapshot(self) -> dict:
        now = self._clock()
        remaining = max(0.0, self._window_start + self.window_seconds - now)
        return {
            "requests_in_window": self._count,
            "max_requests_per_window": self.max_requests,
            "window_remaining_seconds": round(remaining, 3),
            "last_request_age_seconds": None if self._last_request is None else round(now - self._last_request, 3),
        }


__all__ = ["UpstreamRateLimiter"]
