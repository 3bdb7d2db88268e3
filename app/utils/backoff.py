"""Exponential backoff helpers for upstream throttling."""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from app.config import BACKGROUND_REFILL


def compute_backoff_seconds(consecutive: int, *, base: Optional[float] = None, factor: Optional[int] = None, max_seconds: Optional[float] = None, jitter_pct: float = 0.0) -> float:
    """Delay after ``consecutive`` throttled requests: base * factor**consecutive, capped."""
    if consecutive < 0:
        consecutive = 0
    base = float(base if base is not None else BACKGROUND_REFILL["base_delay_seconds"])
    factor = int(factor if factor is not None else BACKGROUND_REFILL["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else BACKGROUND_REFILL["max_delay_seconds"])

    delay = min(base * (factor ** consecutive), max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def parse_retry_after(value: Optional[str], fallback: Optional[float]) -> Optional[float]:
    """Seconds from a Retry-After header (delta-seconds form only)."""
    if value is None:
        return fallback
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return fallback
    return seconds if seconds >= 0 else fallback


@dataclass
class RefillBackoff:
    """Delay schedule for the background refill worker.

    Each consecutive rate-limit hit doubles the inter-request delay up to the
    cap; any success resets it to the base. Every ``threshold`` hits in a row
    additionally ask for one long cooldown. The cooldown does not reset the
    delay exponent, so the delay never shrinks while throttling continues.
    """

    base: float
    max_seconds: float
    threshold: int
    long_cooldown: float
    factor: int = 2
    consecutive: int = 0
    since_cooldown: int = 0

    @classmethod
    def from_config(cls) -> "RefillBackoff":
        return cls(
            base=float(BACKGROUND_REFILL["base_delay_seconds"]),
            max_seconds=float(BACKGROUND_REFILL["max_delay_seconds"]),
            threshold=int(BACKGROUND_REFILL["consecutive_limit_threshold"]),
            long_cooldown=float(BACKGROUND_REFILL["long_cooldown_seconds"]),
            factor=int(BACKGROUND_REFILL["factor"]),
        )

    def next_delay(self) -> float:
        return compute_backoff_seconds(self.consecutive, base=self.base, factor=self.factor, max_seconds=self.max_seconds)

    def record_success(self) -> None:
        self.consecutive = 0
        self.since_cooldown = 0

    def record_rate_limited(self) -> bool:
        """Returns True when this hit calls for the long cooldown."""
        self.consecutive += 1
        self.since_cooldown += 1
        if self.since_cooldown >= self.threshold:
            self.since_cooldown = 0
            return True
        return False


__all__ = ["compute_backoff_seconds", "parse_retry_after", "RefillBackoff"]
