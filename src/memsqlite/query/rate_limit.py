"""
Per-client rate limiting for the query surface.

Two strategies share one interface:

- token bucket: capacity = requests per minute, refilled continuously at
  capacity/60 tokens per second; each query costs tokens according to its
  complexity, fractional balances allowed.
- sliding window: at most N requests per 60 second window; once exceeded the
  client is blocked until the window ends.

A denied request always reports how long to wait before retrying.
"""

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

WINDOW_SECONDS = 60.0


class RateLimitStrategy(str, Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"


@dataclass
class TokenBucket:
    """Token bucket for one client."""

    capacity: float  # Maximum tokens
    tokens: float  # Current tokens
    refill_rate: float  # Tokens per second
    last_refill: float  # Last refill timestamp

    @classmethod
    def create(cls, requests_per_minute: int, now: float) -> "TokenBucket":
        return cls(
            capacity=float(requests_per_minute),
            tokens=float(requests_per_minute),  # Start full
            refill_rate=requests_per_minute / 60.0,
            last_refill=now,
        )

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float, now: float) -> bool:
        self.refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def time_until_available(self, tokens: float, now: float) -> float:
        """Seconds until ``tokens`` can be consumed (0 if already possible)."""
        self.refill(now)
        if self.tokens >= tokens:
            return 0.0
        if tokens > self.capacity:
            return math.inf
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class WindowCounter:
    """Fixed one-minute window for one client."""

    window_start: float
    count: int = 0
    blocked_until: float = 0.0

    @property
    def last_seen(self) -> float:
        return max(self.window_start, self.blocked_until)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: float  # Seconds; 0 when allowed
    remaining: float
    limit: int

    def to_headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, int(self.remaining))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after)))
        return headers


class RateLimiter:
    """
    Rate limiter keyed by client identity.

    Args:
        requests_per_minute: Budget per client
        strategy: ``token_bucket`` or ``sliding_window``
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        requests_per_minute: int = 100,
        strategy: Union[RateLimitStrategy, str] = RateLimitStrategy.TOKEN_BUCKET,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.requests_per_minute = requests_per_minute
        self.strategy = RateLimitStrategy(strategy)
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._windows: dict[str, WindowCounter] = {}

    def check(self, client_id: str, weight: float = 1.0) -> RateLimitDecision:
        """
        Decide whether ``client_id`` may run a query costing ``weight``.

        Allowed requests are charged immediately.
        """
        now = self._clock()
        if self.strategy == RateLimitStrategy.TOKEN_BUCKET:
            return self._check_bucket(client_id, weight, now)
        return self._check_window(client_id, now)

    def _check_bucket(self, client_id: str, weight: float, now: float) -> RateLimitDecision:
        bucket = self._buckets.get(client_id)
        if bucket is None:
            bucket = TokenBucket.create(self.requests_per_minute, now)
            self._buckets[client_id] = bucket

        if bucket.consume(weight, now):
            return RateLimitDecision(
                allowed=True,
                retry_after=0.0,
                remaining=bucket.tokens,
                limit=self.requests_per_minute,
            )
        return RateLimitDecision(
            allowed=False,
            retry_after=bucket.time_until_available(weight, now),
            remaining=bucket.tokens,
            limit=self.requests_per_minute,
        )

    def _check_window(self, client_id: str, now: float) -> RateLimitDecision:
        window = self._windows.get(client_id)
        if window is None or now - window.window_start >= WINDOW_SECONDS:
            window = WindowCounter(window_start=now)
            self._windows[client_id] = window

        if now < window.blocked_until or window.count >= self.requests_per_minute:
            window.blocked_until = window.window_start + WINDOW_SECONDS
            return RateLimitDecision(
                allowed=False,
                retry_after=float(math.ceil(window.blocked_until - now)),
                remaining=0,
                limit=self.requests_per_minute,
            )

        window.count += 1
        return RateLimitDecision(
            allowed=True,
            retry_after=0.0,
            remaining=self.requests_per_minute - window.count,
            limit=self.requests_per_minute,
        )

    def reset(self, client_id: Optional[str] = None) -> None:
        """Forget one client's usage, or everyone's."""
        if client_id is None:
            self._buckets.clear()
            self._windows.clear()
            return
        self._buckets.pop(client_id, None)
        self._windows.pop(client_id, None)

    def cleanup(self, max_idle: float = 3600.0) -> int:
        """
        Drop state for clients idle longer than ``max_idle`` seconds.

        Returns:
            Number of clients removed
        """
        now = self._clock()
        stale_buckets = [
            key for key, bucket in self._buckets.items() if now - bucket.last_refill > max_idle
        ]
        stale_windows = [
            key for key, window in self._windows.items() if now - window.last_seen > max_idle
        ]
        for key in stale_buckets:
            del self._buckets[key]
        for key in stale_windows:
            del self._windows[key]
        return len(stale_buckets) + len(stale_windows)
