"""
API key issuance and authentication.

Keys follow the format gtch_<live|test>_<32 alphanumerics>. Only the
SHA-256 digest is stored (plus a short display prefix), so a lookup is a
single indexed equality match on the digest.

Authentication order:
1. Authorization header present and shaped like "Bearer gtch_..." (no I/O)
2. Digest lookup of an active (non-revoked) key, via an optional TTL cache
3. Origin checked against the key's domain allow-list
4. last_used_at written in the background; never awaited, errors dropped
"""
import hashlib
import logging
import re
import secrets
import string
import threading
import time
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from gotcha.core.database import api_keys, projects, subscriptions, get_db_session
from gotcha.core.errors import error_for_code
from gotcha.features.origin.service import is_domain_allowed
from gotcha.models.api_key import ApiKeyIdentity, ApiKeyRecord, AuthResult, IssuedApiKey


logger = logging.getLogger("gotcha")

KEY_PREFIX = "gtch"
KEY_KINDS = ("live", "test")
KEY_RANDOM_LENGTH = 32
KEY_MIN_LENGTH = 30
KEY_MAX_LENGTH = 100
DISPLAY_PREFIX_LENGTH = 14

_ALPHABET = string.ascii_letters + string.digits
_BEARER = "Bearer "


def _key_pattern(prefix: str) -> "re.Pattern[str]":
    kinds = "|".join(KEY_KINDS)
    return re.compile(rf"^{re.escape(prefix)}_({kinds})_[A-Za-z0-9]+$")


def hash_api_key(key: str) -> str:
    """One-way digest used for storage and lookup."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key(kind: str = "live", prefix: str = KEY_PREFIX) -> Tuple[str, str, str]:
    """
    Generate a new API key.

    Returns (full_key, key_hash, display_prefix). The full key is shown to
    the user once and never stored.
    """
    if kind not in KEY_KINDS:
        raise ValueError(f"Invalid key kind: {kind}")
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(KEY_RANDOM_LENGTH))
    full_key = f"{prefix}_{kind}_{random_part}"
    return full_key, hash_api_key(full_key), full_key[:DISPLAY_PREFIX_LENGTH]


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith(_BEARER):
        return None
    token = authorization[len(_BEARER):].strip()
    return token or None


def is_valid_key_format(key: Optional[str], prefix: str = KEY_PREFIX) -> bool:
    if not key or not (KEY_MIN_LENGTH <= len(key) <= KEY_MAX_LENGTH):
        return False
    return _key_pattern(prefix).match(key) is not None


class ApiKeyLookupCache:
    """Bounded TTL cache of digest -> ApiKeyRecord.

    Owned by the composition root. Entries expire after ttl_seconds so a
    revocation elsewhere is picked up within that bound; revoke_api_key
    invalidates eagerly when given the cache.
    """

    def __init__(self, ttl_seconds: float = 60.0, max_entries: int = 10000, time_fn: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.time_fn = time_fn
        self._entries: Dict[str, Tuple[float, ApiKeyRecord]] = {}
        self._lock = threading.Lock()

    def get(self, key_hash: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            entry = self._entries.get(key_hash)
            if entry is None:
                return None
            expires_at, record = entry
            if self.time_fn() >= expires_at:
                del self._entries[key_hash]
                return None
            return record

    def set(self, key_hash: str, record: ApiKeyRecord) -> None:
        with self._lock:
            if key_hash not in self._entries and len(self._entries) >= self.max_entries:
                self._evict()
            self._entries[key_hash] = (self.time_fn() + self.ttl_seconds, record)

    def invalidate(self, key_hash: str) -> None:
        with self._lock:
            self._entries.pop(key_hash, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        now = self.time_fn()
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self.max_entries:
            # Drop the entry closest to expiry
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]


class SqlApiKeyStore:
    """Key lookup against the relational store."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def find_active(self, key_hash: str) -> Optional[ApiKeyRecord]:
        query = (
            select(
                api_keys.c.id,
                api_keys.c.project_id,
                api_keys.c.allowed_domains,
                api_keys.c.revoked_at,
                projects.c.organization_id,
                subscriptions.c.plan,
            )
            .select_from(
                api_keys.join(projects, api_keys.c.project_id == projects.c.id).outerjoin(
                    subscriptions, subscriptions.c.organization_id == projects.c.organization_id
                )
            )
            .where(api_keys.c.key_hash == key_hash, api_keys.c.revoked_at.is_(None))
        )
        with get_db_session(self.session_factory) as session:
            row = session.execute(query).first()
        if row is None:
            return None
        return ApiKeyRecord(
            id=row.id,
            project_id=row.project_id,
            organization_id=row.organization_id,
            plan=row.plan or "FREE",
            allowed_domains=list(row.allowed_domains or []),
            revoked_at=row.revoked_at,
        )

    def touch_last_used(self, key_id: str, at: Optional[datetime] = None) -> None:
        with get_db_session(self.session_factory) as session:
            session.execute(
                update(api_keys)
                .where(api_keys.c.id == key_id)
                .values(last_used_at=at or datetime.now(timezone.utc))
            )


class LastUsedRecorder:
    """Dispatches last-used writes to a background executor.

    record() returns immediately; failures are logged at debug level
    and never reach the caller.
    """

    def __init__(self, store: SqlApiKeyStore, executor: Executor):
        self.store = store
        self.executor = executor

    def record(self, key_id: str) -> None:
        at = datetime.now(timezone.utc)
        try:
            future = self.executor.submit(self.store.touch_last_used, key_id, at)
        except RuntimeError:
            # Executor already shut down
            logger.debug("api_key.last_used.skipped", extra={"key_id": key_id})
            return
        future.add_done_callback(lambda f: self._log_failure(f, key_id))

    @staticmethod
    def _log_failure(future, key_id: str) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.debug("api_key.last_used.failed", extra={"key_id": key_id, "error_code": type(exc).__name__})


class ApiKeyAuthenticator:
    def __init__(
        self,
        store: SqlApiKeyStore,
        *,
        cache: Optional[ApiKeyLookupCache] = None,
        recorder: Optional[LastUsedRecorder] = None,
        prefix: str = KEY_PREFIX,
    ):
        self.store = store
        self.cache = cache
        self.recorder = recorder
        self.prefix = prefix

    def _lookup(self, key_hash: str) -> Optional[ApiKeyRecord]:
        if self.cache is not None:
            cached = self.cache.get(key_hash)
            if cached is not None:
                return cached
        record = self.store.find_active(key_hash)
        if record is not None and self.cache is not None:
            self.cache.set(key_hash, record)
        return record

    def authenticate(self, authorization: Optional[str], origin: Optional[str]) -> AuthResult:
        """Resolve an Authorization header to an identity.

        Store errors propagate; only the last-used write is best-effort.
        """
        if not authorization:
            return AuthResult.fail("INVALID_API_KEY", "Authorization header is required", 401)

        key = extract_bearer_token(authorization)
        if not is_valid_key_format(key, self.prefix):
            return AuthResult.fail("INVALID_API_KEY", "Invalid API key format", 401)

        record = self._lookup(hash_api_key(key))
        if record is None:
            logger.info("api_key.rejected", extra={"error_code": "INVALID_API_KEY"})
            return AuthResult.fail("INVALID_API_KEY", "The provided API key is invalid or revoked", 401)

        if not is_domain_allowed(origin, record.allowed_domains):
            logger.info(
                "api_key.origin_rejected",
                extra={"error_code": "ORIGIN_NOT_ALLOWED", "key_id": record.id, "project_id": record.project_id},
            )
            return AuthResult.fail("ORIGIN_NOT_ALLOWED", "This API key is not authorized for this domain", 403)

        if self.recorder is not None:
            self.recorder.record(record.id)

        return AuthResult.ok(
            ApiKeyIdentity(
                id=record.id,
                project_id=record.project_id,
                organization_id=record.organization_id,
                plan=record.plan,
                allowed_domains=record.allowed_domains,
            )
        )

    def require(self, authorization: Optional[str], origin: Optional[str]) -> ApiKeyIdentity:
        """authenticate(), raising the matching AppError on failure."""
        result = self.authenticate(authorization, origin)
        if not result.success:
            raise error_for_code(result.error.code, result.error.message)
        return result.identity


def create_api_key(
    session: Session,
    project_id: str,
    *,
    kind: str = "live",
    name: Optional[str] = None,
    allowed_domains: Optional[List[str]] = None,
    prefix: str = KEY_PREFIX,
) -> IssuedApiKey:
    """Create and persist a key for a project. Caller commits."""
    full_key, key_hash, display = generate_api_key(kind, prefix)
    key_id = str(uuid4())
    created_at = datetime.now(timezone.utc)
    domains = [d.strip() for d in (allowed_domains or []) if d and d.strip()]

    session.execute(
        insert(api_keys).values(
            id=key_id,
            project_id=project_id,
            name=name,
            key_hash=key_hash,
            key_prefix=display,
            allowed_domains=domains,
            created_at=created_at,
        )
    )
    return IssuedApiKey(
        id=key_id,
        project_id=project_id,
        key=full_key,
        key_prefix=display,
        allowed_domains=domains,
        created_at=created_at,
    )


def revoke_api_key(session: Session, key_id: str, *, cache: Optional[ApiKeyLookupCache] = None) -> bool:
    """
    Soft-delete a key by stamping revoked_at.
    Returns True if an active key was revoked. Caller commits.
    """
    row = session.execute(
        select(api_keys.c.key_hash).where(api_keys.c.id == key_id, api_keys.c.revoked_at.is_(None))
    ).first()
    if row is None:
        return False

    session.execute(
        update(api_keys)
        .where(api_keys.c.id == key_id, api_keys.c.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )
    if cache is not None:
        cache.invalidate(row.key_hash)
    return True
