"""Shared Redis client for the rate-limit and idempotency stores."""

from typing import Optional

from redis import Redis

from gotcha.core.config import settings

_client: Optional[Redis] = None


def get_redis(url: Optional[str] = None) -> Redis:
    """Return the process-wide client, creating it from REDIS_URL on first use."""
    global _client
    if url:
        return Redis.from_url(url, decode_responses=True)
    if _client is None:
        _client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client
