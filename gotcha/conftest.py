# gotcha/conftest.py
import os
import pytest
from concurrent.futures import ThreadPoolExecutor
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from gotcha.api.dependencies import Admission
from gotcha.core.database import build_engine, create_all_tables, get_db_session
from gotcha.features.api_keys.service import (
    ApiKeyAuthenticator,
    ApiKeyLookupCache,
    LastUsedRecorder,
    SqlApiKeyStore,
)
from gotcha.features.idempotency.service import IdempotencyGuard, InMemoryIdempotencyCache
from gotcha.features.ratelimit.service import InMemorySlidingWindowStore, SlidingWindowRateLimiter
from gotcha.features.tenants.service import create_organization, create_project
from gotcha.tests.mocks import InlineExecutor


@pytest.fixture(scope="session")
def db_url():
    """
    Provide DATABASE_URL for tests.

    Returns the URL from environment, or None if not set.
    Tests can use this to conditionally enable Postgres integration tests.
    """
    return os.getenv("DATABASE_URL")


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = build_engine("sqlite+pysqlite:///:memory:")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def tenant(session_factory):
    """Organization on the FREE plan with one project and a live key."""
    with get_db_session(session_factory) as session:
        org_id = create_organization(session, "Acme", plan="FREE")
        project_id, issued = create_project(session, org_id, "Website", allowed_domains=["*.acme.test", "localhost:*"])
    return {
        "organization_id": org_id,
        "project_id": project_id,
        "key": issued.key,
        "key_id": issued.id,
    }


@pytest.fixture(scope="function")
def rate_store():
    return InMemorySlidingWindowStore()


@pytest.fixture(scope="function")
def idempotency_cache():
    return InMemoryIdempotencyCache()


@pytest.fixture(scope="function")
def admission(session_factory, rate_store, idempotency_cache):
    """Admission wired to in-memory stores; last-used writes run inline."""
    store = SqlApiKeyStore(session_factory)
    authenticator = ApiKeyAuthenticator(
        store,
        cache=ApiKeyLookupCache(ttl_seconds=60),
        recorder=LastUsedRecorder(store, InlineExecutor()),
    )
    return Admission(
        authenticator=authenticator,
        rate_limiter=SlidingWindowRateLimiter(rate_store, window_seconds=60),
        idempotency=IdempotencyGuard(idempotency_cache, ttl_seconds=300),
        session_factory=session_factory,
    )


@pytest.fixture(scope="function")
def background_executor():
    executor = ThreadPoolExecutor(max_workers=1)
    yield executor
    executor.shutdown(wait=True)
