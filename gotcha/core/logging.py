"""
Structured logging for the admission pipeline.

- Production emits one JSON object per line; other envs a readable line.
- Every record carries the request_id bound by RequestIdMiddleware.
- Anything shaped like an API key is masked before it is formatted, so a
  stray f-string cannot leak a credential. Log key ids or display
  prefixes instead.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

from gotcha.core.config import settings

LOGGER_NAME = "gotcha"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Extra fields promoted into JSON output when present on a record
STRUCTURED_FIELDS = (
    "error_code",
    "status",
    "path",
    "method",
    "latency_bucket",
    "organization_id",
    "project_id",
    "key_id",
    "event_type",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def credential_pattern(prefix: str) -> "re.Pattern[str]":
    return re.compile(rf"\b({re.escape(prefix)}_(?:live|test)_)[A-Za-z0-9]+")


_KEY_PATTERN = credential_pattern(settings.API_KEY_PREFIX)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label so log cardinality stays bounded."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def redact_credentials(text: str, pattern: Optional["re.Pattern[str]"] = None) -> str:
    return (pattern or _KEY_PATTERN).sub(r"\1****", text)


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Fill record.request_id from context unless the caller passed one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class CredentialRedactionFilter(logging.Filter):
    """Masks API keys issued under prefix (default: the configured key prefix)."""

    def __init__(self, prefix: Optional[str] = None):
        super().__init__()
        self.pattern = credential_pattern(prefix) if prefix else _KEY_PATTERN

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_credentials(message, self.pattern)
        if redacted != message:
            record.msg, record.args = redacted, None
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if isinstance(value, str):
                setattr(record, field, redact_credentials(value, self.pattern))
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(
            (field, getattr(record, field))
            for field in STRUCTURED_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        code = getattr(record, "error_code", None)
        if code:
            parts.append(f"code={code}")
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO, key_prefix: Optional[str] = None) -> None:
    """Install a single stdout handler on the gotcha logger; safe to call repeatedly."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    handler.addFilter(CredentialRedactionFilter(key_prefix))

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own handlers; keep its errors out of ours
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _safe_truncate(value, limit: int = 500) -> str:
    try:
        text = redact_credentials(str(value))
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str],
    organization_id: Optional[str] = None,
    project_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Log a tenant-scoped event. Extra values are stringified, redacted and truncated."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "organization_id": organization_id,
        "project_id": project_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
