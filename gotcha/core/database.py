"""
Relational store: table definitions and session management.

Tables hold tenants (organizations, subscriptions with the monthly usage
counter), projects, hashed API keys and the SDK responses. Postgres in
production; SQLite (in-memory or file) in tests.
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, MetaData, String, Table, Text, create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func, text

from gotcha.core.config import settings

logger = logging.getLogger("gotcha")

metadata = MetaData()

# Tenants (billing and data-isolation unit)
organizations = Table(
    'organizations',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# One subscription per organization; holds the monthly usage counter.
# responses_reset_at is server-local wall time (naive) so the month
# boundary matches the server clock.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('organization_id', String(100), ForeignKey('organizations.id', ondelete='CASCADE'), primary_key=True),
    Column('plan', String(20), nullable=False, server_default='FREE'),
    Column('responses_this_month', Integer, nullable=False, server_default='0'),
    Column('responses_reset_at', DateTime(timezone=False), nullable=True),
    Column('updated_at', DateTime(timezone=False), nullable=True),
)

projects = Table(
    'projects',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('organization_id', String(100), ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Only the SHA-256 digest of a key is stored; key_prefix is for display.
api_keys = Table(
    'api_keys',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('project_id', String(100), ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
    Column('name', Text, nullable=True),
    Column('key_hash', String(64), nullable=False, unique=True),
    Column('key_prefix', String(32), nullable=False),
    Column('allowed_domains', JSON, nullable=False),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

responses = Table(
    'responses',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('project_id', String(100), ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
    Column('element_id', String(255), nullable=False),
    Column('mode', String(20), nullable=False),
    Column('content', Text, nullable=True),
    Column('title', Text, nullable=True),
    Column('rating', Integer, nullable=True),
    Column('vote', String(10), nullable=True),
    Column('poll_options', JSON, nullable=True),
    Column('poll_selected', JSON, nullable=True),
    Column('experiment_id', String(255), nullable=True),
    Column('variant', String(255), nullable=True),
    Column('end_user_id', String(255), nullable=True),
    Column('end_user_meta', JSON, nullable=True),
    Column('url', Text, nullable=True),
    Column('user_agent', Text, nullable=True),
    Column('idempotency_key', String(256), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_responses_project_created', 'project_id', 'created_at'),
    Index('idx_responses_project_element', 'project_id', 'element_id'),
)


# Postgres pool sizing
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # seconds

_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when set."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """
    Engine for url.

    In-memory SQLite gets one shared connection (StaticPool) so every
    session sees the same database; file SQLite waits on locks instead of
    failing; anything else gets a bounded QueuePool.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )
    if parsed.database in (None, "", ":memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the process-wide engine and session factory."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    _engine = build_engine(url)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session(session_factory=None):
    """
    Transactional scope: commit on clean exit, roll back and re-raise on error.

    Services take an optional session_factory so tests can point them at
    their own engine; None means the process-wide factory.

        with get_db_session() as session:
            session.execute(...)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine: Optional[Engine] = None) -> None:
    """Destructive; tests and local development only."""
    metadata.drop_all(bind=engine or get_engine())


def check_connection(engine: Optional[Engine] = None) -> bool:
    """True if a trivial query succeeds; failures are logged, not raised."""
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("db.connection_check_failed", extra={"error_code": type(exc).__name__})
        return False
    return True
