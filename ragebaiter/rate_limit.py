"""
Rate Limiters — Outbound and Per-Key Request Throttling

Two sliding-window limiters with different jobs:

  - SlidingWindowRateLimiter: bounds outbound calls to one upstream
    provider (N per 1000ms). acquire() suspends until the oldest
    timestamp leaves the window; it never spins.
  - RequestRateLimiter: bounds inbound requests per caller identity
    (default 60 per 60s). A rejection is a RateLimitDecision with a
    Retry-After hint, not an exception.

Both take an injectable millisecond clock so tests stay deterministic.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional


# Maximum number of unique keys tracked before LRU eviction
MAX_RATE_LIMIT_KEYS = 5000


def now_ms() -> float:
    return time.time() * 1000


async def sleep_seconds(seconds: float) -> None:
    await asyncio.sleep(seconds)


# ============================================================
# OUTBOUND (PER PROVIDER)
# ============================================================

class SlidingWindowRateLimiter:
    """Allows at most max_requests acquisitions in any window_ms span."""

    def __init__(
        self,
        max_requests: int = 10,
        window_ms: float = 1000,
        now: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = sleep_seconds,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._now = now
        self._sleep = sleep
        self._timestamps: deque[float] = deque()

    def _prune(self, current: float) -> None:
        while self._timestamps and current - self._timestamps[0] >= self.window_ms:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        while True:
            current = self._now()
            self._prune(current)

            # No await between the check and the append, so this is atomic
            # with respect to other coroutines on the loop.
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(current)
                return

            wait_ms = max(1.0, self._timestamps[0] + self.window_ms - current)
            await self._sleep(wait_ms / 1000)

    @property
    def in_window(self) -> int:
        self._prune(self._now())
        return len(self._timestamps)


# ============================================================
# INBOUND (PER CALLER IDENTITY)
# ============================================================

@dataclass
class RateWindow:
    """Sliding window counter."""
    timestamps: list[float] = field(default_factory=list)

    def count_within(self, window_ms: float, current: float) -> int:
        """Count requests within the sliding window."""
        cutoff = current - window_ms
        self.timestamps = [t for t in self.timestamps if t > cutoff]
        return len(self.timestamps)

    def record(self, current: float):
        self.timestamps.append(current)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0
    code: Optional[str] = None

    def to_error(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": "Rate limit exceeded for this user",
                "retryAfterSeconds": self.retry_after_seconds,
            }
        }


class RequestRateLimiter:
    """Per-key sliding window over window_ms, bounded key table with LRU eviction."""

    def __init__(
        self,
        per_window: int = 60,
        window_ms: float = 60_000,
        enabled: bool = True,
        max_keys: int = MAX_RATE_LIMIT_KEYS,
        now: Callable[[], float] = now_ms,
    ):
        self.per_window = per_window
        self.window_ms = window_ms
        self.enabled = enabled
        self.max_keys = max_keys
        self._now = now
        # OrderedDict tracks access order for eviction
        self._windows: OrderedDict[str, RateWindow] = OrderedDict()
        self._lock = threading.Lock()

    def check(self, key: Optional[str]) -> RateLimitDecision:
        """Record a request for key if allowed; otherwise return the rejection."""
        if not self.enabled or key is None:
            return RateLimitDecision(allowed=True, limit=self.per_window, remaining=self.per_window)

        current = self._now()
        with self._lock:
            if key not in self._windows:
                if len(self._windows) >= self.max_keys:
                    self._windows.popitem(last=False)
                self._windows[key] = RateWindow()
            else:
                self._windows.move_to_end(key)

            window = self._windows[key]
            count = window.count_within(self.window_ms, current)

            if count >= self.per_window:
                oldest = window.timestamps[0]
                retry_after = max(1, math.ceil((oldest + self.window_ms - current) / 1000))
                return RateLimitDecision(
                    allowed=False,
                    limit=self.per_window,
                    remaining=0,
                    retry_after_seconds=retry_after,
                    code="RATE_LIMITED",
                )

            window.record(current)
            return RateLimitDecision(
                allowed=True,
                limit=self.per_window,
                remaining=self.per_window - count - 1,
            )

    def get_usage(self, key: str) -> dict:
        """Get current usage stats for a key."""
        with self._lock:
            window = self._windows.get(key)
            if not window:
                return {"window": 0, "limit": self.per_window}
            return {
                "window": window.count_within(self.window_ms, self._now()),
                "limit": self.per_window,
            }

    def cleanup_stale_windows(self, max_age_ms: float = 7_200_000) -> int:
        """Remove windows with no recent activity. Call periodically."""
        cutoff = self._now() - max_age_ms
        with self._lock:
            stale = [
                k for k, w in self._windows.items()
                if not w.timestamps or w.timestamps[-1] < cutoff
            ]
            for k in stale:
                del self._windows[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


def resolve_rate_limit_key(
    key_id: Optional[str] = None,
    api_key: Optional[str] = None,
    forwarded_for: Optional[str] = None,
    client_host: Optional[str] = None,
) -> str:
    """Identity for request limiting: authenticated key → raw key → first forwarded hop → peer."""
    if key_id:
        return f"auth:{key_id}"
    if api_key:
        return f"key:{hashlib.sha256(api_key.encode()).hexdigest()[:12]}"
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"
    if client_host:
        return f"ip:{client_host}"
    return "anonymous"
