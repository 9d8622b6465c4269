"""
Sliding-window rate limiter keyed by "<scope>:<caller>" and plan tier.

The window is a trailing interval (60s by default); each admitted hit is
recorded with its timestamp and ages out once it falls behind the window.
Correctness under concurrent callers comes from the store: the Redis store
runs its trim/add/count in one MULTI/EXEC transaction, the in-memory store
under a lock. The limiter itself holds no locks.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional, Tuple
from uuid import uuid4

from redis import Redis


# Requests per window, monotonically increasing with tier
PLAN_RATE_LIMITS = {
    "free": 60,
    "starter": 120,
    "pro": 300,
    "enterprise": 1000,
}
DEFAULT_RATE_TIER = "free"


def normalize_tier(plan: Optional[str]) -> str:
    tier = (plan or "").strip().lower()
    return tier if tier in PLAN_RATE_LIMITS else DEFAULT_RATE_TIER


def rate_limit_for_plan(plan: Optional[str]) -> int:
    """Ceiling for a plan; unknown plans get the most restrictive tier."""
    return PLAN_RATE_LIMITS[normalize_tier(plan)]


def rate_limit_identifier(scope: str, caller: str) -> str:
    return f"{scope}:{caller}"


@dataclass(frozen=True)
class RateLimitResult:
    admitted: bool
    limit: int
    remaining: int
    reset_at: datetime

    @property
    def reset_ms(self) -> int:
        return int(self.reset_at.timestamp() * 1000)

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        current = now or datetime.now(timezone.utc)
        return max(1, int((self.reset_at - current).total_seconds() + 0.999))

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_ms),
        }
        if not self.admitted:
            headers["Retry-After"] = str(self.retry_after_seconds())
        return headers


class InMemorySlidingWindowStore:
    """
    Process-local store for tests and single-instance development.

    A key is dropped once its window is empty. Every sweep_every hits the
    store also drops keys whose newest hit has left the window, so idle
    identifiers do not accumulate.
    """

    def __init__(self, sweep_every: int = 1000):
        self.windows: Dict[str, Deque[int]] = {}
        self.sweep_every = sweep_every
        self._hits_since_sweep = 0
        self._lock = threading.Lock()

    def hit(self, key: str, now_ms: int, window_ms: int, limit: int) -> Tuple[bool, int, Optional[int]]:
        """Record a hit if under limit. Returns (admitted, count, oldest_ms)."""
        cutoff = now_ms - window_ms
        with self._lock:
            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self.sweep_every:
                self._sweep(cutoff)

            hits = self.windows.get(key) or deque()
            while hits and hits[0] <= cutoff:
                hits.popleft()
            admitted = len(hits) < limit
            if admitted:
                hits.append(now_ms)

            if hits:
                self.windows[key] = hits
            else:
                self.windows.pop(key, None)
            oldest = hits[0] if hits else None
            return admitted, len(hits), oldest

    def _sweep(self, cutoff: int) -> None:
        self._hits_since_sweep = 0
        for key in [k for k, hits in self.windows.items() if hits[-1] <= cutoff]:
            del self.windows[key]

    def clear(self) -> None:
        with self._lock:
            self.windows.clear()
            self._hits_since_sweep = 0


class RedisSlidingWindowStore:
    """Sorted-set window per key: member per hit, score = hit time in ms."""

    def __init__(self, client: Redis):
        self.client = client

    def hit(self, key: str, now_ms: int, window_ms: int, limit: int) -> Tuple[bool, int, Optional[int]]:
        member = f"{now_ms}-{uuid4().hex}"
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zadd(key, {member: now_ms})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, window_ms)
        _, _, count, oldest_entries, _ = pipe.execute()

        admitted = count <= limit
        if not admitted:
            # Rejected hits do not consume quota
            self.client.zrem(key, member)
            count -= 1
        oldest = int(oldest_entries[0][1]) if oldest_entries else None
        return admitted, count, oldest


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store,
        *,
        window_seconds: int = 60,
        prefix: str = "gotcha:ratelimit",
        enabled: bool = True,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.prefix = prefix
        self.enabled = enabled
        self.time_fn = time_fn

    def check(self, identifier: str, plan: Optional[str] = DEFAULT_RATE_TIER) -> RateLimitResult:
        tier = normalize_tier(plan)
        limit = PLAN_RATE_LIMITS[tier]
        now_ms = int(self.time_fn() * 1000)
        window_ms = self.window_seconds * 1000

        if not self.enabled:
            return RateLimitResult(True, limit, limit, _from_ms(now_ms + window_ms))

        admitted, count, oldest = self.store.hit(f"{self.prefix}:{tier}:{identifier}", now_ms, window_ms, limit)
        reset_ms = (oldest if oldest is not None else now_ms) + window_ms
        return RateLimitResult(
            admitted=admitted,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=_from_ms(reset_ms),
        )


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, timezone.utc)
