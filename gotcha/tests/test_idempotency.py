"""
gotcha/tests/test_idempotency.py
Tests for Idempotency-Key handling.
"""

import os
from uuid import uuid4

import pytest

from gotcha.core.errors import ValidationError
from gotcha.features.idempotency.service import (
    IdempotencyGuard,
    InMemoryIdempotencyCache,
    RedisIdempotencyCache,
    validate_idempotency_key,
)
from gotcha.tests.mocks import FakeClock


KEY = "idem-key-0001"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return IdempotencyGuard(InMemoryIdempotencyCache(time_fn=clock), ttl_seconds=300)


def test_first_use_is_not_duplicate(guard):
    """Unknown key is not a duplicate."""
    assert guard.check(KEY).is_duplicate is False


def test_remembered_response_is_returned(guard):
    """Replay returns the exact cached body."""
    guard.remember(KEY, {"id": "resp-1", "status": "created"})
    result = guard.check(KEY)
    assert result.is_duplicate is True
    assert result.cached_response == {"id": "resp-1", "status": "created"}


def test_entries_expire_after_ttl(guard, clock):
    guard.remember(KEY, {"id": "resp-1"})
    clock.advance(299)
    assert guard.check(KEY).is_duplicate is True
    clock.advance(2)
    assert guard.check(KEY).is_duplicate is False


def test_different_keys_are_independent(guard):
    guard.remember(KEY, {"id": "resp-1"})
    assert guard.check("idem-key-0002").is_duplicate is False


def test_same_key_in_different_scopes_is_independent(guard):
    guard.remember(KEY, {"id": "resp-a"}, scope="project-a")
    assert guard.check(KEY, scope="project-b").is_duplicate is False
    assert guard.check(KEY, scope="project-a").cached_response == {"id": "resp-a"}


def test_scope_does_not_count_toward_key_length(guard):
    key = "x" * 256
    guard.remember(key, {"id": "resp-1"}, scope="project-with-a-long-id")
    assert guard.check(key, scope="project-with-a-long-id").is_duplicate is True


def test_run_executes_write_once(guard):
    calls = []

    def write():
        calls.append(1)
        return {"id": f"resp-{len(calls)}"}

    first, dup_first = guard.run(KEY, write)
    second, dup_second = guard.run(KEY, write)

    assert len(calls) == 1
    assert dup_first is False
    assert dup_second is True
    assert first == second == {"id": "resp-1"}


def test_failed_write_is_not_cached(guard):
    def write():
        raise RuntimeError("store down")

    with pytest.raises(RuntimeError):
        guard.run(KEY, write)
    assert guard.check(KEY).is_duplicate is False


def test_datetimes_are_serialized(guard):
    from datetime import datetime, timezone

    guard.remember(KEY, {"createdAt": datetime(2026, 1, 1, tzinfo=timezone.utc)})
    assert guard.check(KEY).cached_response["createdAt"].startswith("2026-01-01")


@pytest.mark.parametrize("key", ["short", "x" * 9, "x" * 257])
def test_out_of_range_keys_rejected(key):
    with pytest.raises(ValidationError) as exc:
        validate_idempotency_key(key)
    assert exc.value.code == "INVALID_REQUEST"
    assert exc.value.status_code == 400
    assert exc.value.details[0]["field"] == "Idempotency-Key"


@pytest.mark.parametrize("key", ["x" * 10, "x" * 256])
def test_boundary_lengths_accepted(key):
    assert validate_idempotency_key(key) == key


def test_missing_key_rejected():
    with pytest.raises(ValidationError):
        validate_idempotency_key(None)


@pytest.mark.skipif(not os.getenv("REDIS_URL"), reason="REDIS_URL not set")
def test_redis_cache_roundtrip():
    from redis import Redis

    client = Redis.from_url(os.environ["REDIS_URL"], decode_responses=True)
    prefix = f"gotcha:test:{uuid4().hex}"
    guard = IdempotencyGuard(RedisIdempotencyCache(client, prefix=prefix), ttl_seconds=5)
    guard.remember(KEY, {"id": "resp-1"})
    assert guard.check(KEY).cached_response == {"id": "resp-1"}
    assert 0 < client.ttl(f"{prefix}:{KEY}") <= 5
    client.delete(f"{prefix}:{KEY}")
