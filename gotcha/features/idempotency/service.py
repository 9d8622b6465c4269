"""
gotcha/features/idempotency/service.py

Idempotency-Key handling for SDK writes.

A key maps to the serialized response of the first successful write for
5 minutes. A replay within that window gets the cached body back and the
write is not executed again. Concurrent first uses are resolved by the
cache (last writer wins); dedup is best-effort, not exactly-once.
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from redis import Redis

from gotcha.core.errors import ValidationError


IDEMPOTENCY_KEY_MIN_LENGTH = 10
IDEMPOTENCY_KEY_MAX_LENGTH = 256
IDEMPOTENCY_TTL_SECONDS = 300


def validate_idempotency_key(key: Optional[str]) -> str:
    """Return the key if it is 10-256 characters; raise ValidationError otherwise."""
    if key is None:
        raise ValidationError(
            "Idempotency key is required",
            details=[{"field": "Idempotency-Key", "message": "Idempotency key is required"}],
        )
    if not (IDEMPOTENCY_KEY_MIN_LENGTH <= len(key) <= IDEMPOTENCY_KEY_MAX_LENGTH):
        message = (
            f"Idempotency key must be between {IDEMPOTENCY_KEY_MIN_LENGTH} "
            f"and {IDEMPOTENCY_KEY_MAX_LENGTH} characters"
        )
        raise ValidationError(message, details=[{"field": "Idempotency-Key", "message": message}])
    return key


class InMemoryIdempotencyCache:
    """In-memory fallback with per-entry expiry."""

    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self.time_fn = time_fn
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.time_fn() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self.time_fn() + ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisIdempotencyCache:
    def __init__(self, client: Redis, prefix: str = "gotcha:idempotency:response"):
        self.client = client
        self.prefix = prefix

    def get(self, key: str) -> Optional[str]:
        return self.client.get(f"{self.prefix}:{key}")

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(f"{self.prefix}:{key}", value, ex=ttl_seconds)


@dataclass(frozen=True)
class IdempotencyCheck:
    is_duplicate: bool
    cached_response: Optional[Dict[str, Any]] = None


class IdempotencyGuard:
    """
    Replay protection keyed by (scope, Idempotency-Key).

    The scope is the tenant's project id, so two tenants sending the same
    header value never see each other's cached response.
    """

    def __init__(self, cache, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _cache_key(key: Optional[str], scope: Optional[str]) -> str:
        key = validate_idempotency_key(key)
        return f"{scope}:{key}" if scope is not None else key

    def check(self, key: Optional[str], scope: Optional[str] = None) -> IdempotencyCheck:
        """Look up a prior response for key. Raises ValidationError on a bad key."""
        cached = self.cache.get(self._cache_key(key, scope))
        if cached is None:
            return IdempotencyCheck(is_duplicate=False)
        return IdempotencyCheck(is_duplicate=True, cached_response=json.loads(cached))

    def remember(self, key: str, response: Dict[str, Any], scope: Optional[str] = None) -> None:
        """Cache a successful write's response under key."""
        self.cache.set(self._cache_key(key, scope), json.dumps(response, default=str), self.ttl_seconds)

    def run(
        self,
        key: str,
        write: Callable[[], Dict[str, Any]],
        scope: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Execute write once per (scope, key). Returns (response, was_duplicate)."""
        existing = self.check(key, scope)
        if existing.is_duplicate:
            return existing.cached_response, True
        result = write()
        self.remember(key, result, scope)
        return result, False
