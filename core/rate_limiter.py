"""
core/rate_limiter.py -- In-process sliding-window admission counter.

Each (subject, action) key owns a list of admission timestamps (epoch ms).
check() prunes entries that fell out of the window, then admits the call if
fewer than `limit` remain.

State lives on the instance, not the module: construct one limiter per
process (app lifespan) or per test. Limits are NOT shared between service
instances.

Keys that are never checked again would otherwise stay in memory forever,
so every `sweep_every` checks the limiter drops buckets whose newest
admission has left its window.

Usage:
    limiter = SlidingWindowLimiter()
    result = limiter.check(account_id, "create-idea", limit=5, window_ms=3_600_000)
    if not result.allowed:
        wait = result.retry_after_ms
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_ms: int = 0


class SlidingWindowLimiter:
    def __init__(self, clock_ms: Callable[[], int] = _now_ms, sweep_every: int = 1000) -> None:
        self._clock_ms = clock_ms
        self._buckets: dict[tuple[str, str], list[int]] = {}
        self._windows: dict[tuple[str, str], int] = {}
        self._sweep_every = max(1, sweep_every)
        self._checks = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, subject: str, action: str, limit: int, window_ms: int) -> RateLimitResult:
        """Admit or reject one call for (subject, action).

        Rejections do not consume a slot. retry_after_ms is the time until the
        oldest admission in the window expires, clamped to [0, window_ms].
        """
        key = (subject, action)
        now = self._clock_ms()
        window_start = now - window_ms
        with self._lock:
            self._checks += 1
            if self._checks % self._sweep_every == 0:
                self._sweep(now)
            self._windows[key] = window_ms
            recent = [ts for ts in self._buckets.get(key, []) if ts >= window_start]
            if len(recent) >= limit:
                self._buckets[key] = recent
                oldest = recent[0]
                retry_after = min(window_ms, max(0, window_ms - (now - oldest)))
                return RateLimitResult(allowed=False, retry_after_ms=retry_after)
            recent.append(now)
            self._buckets[key] = recent
        return RateLimitResult(allowed=True)

    def reset(self, subject: str, action: str) -> None:
        with self._lock:
            self._buckets.pop((subject, action), None)
            self._windows.pop((subject, action), None)

    def _sweep(self, now: int) -> None:
        # Caller holds the lock.
        stale = [key for key, stamps in self._buckets.items() if not stamps or stamps[-1] < now - self._windows[key]]
        for key in stale:
            del self._buckets[key]
            del self._windows[key]
