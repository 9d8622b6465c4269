"""Tests for structured logging and request_id propagation."""

import json
import logging

from fastapi.testclient import TestClient

from gotcha.core.logging import (
    CredentialRedactionFilter,
    JsonFormatter,
    PrettyFormatter,
    RequestIdFilter,
    latency_bucket_ms,
    log_event,
    redact_credentials,
    request_id_ctx_var,
)
from gotcha.main import create_app


def _record(msg="hello", **extra):
    record = logging.LogRecord("gotcha", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_request_id_in_response_and_logs(caplog, admission):
    client = TestClient(create_app(admission))
    with caplog.at_level(logging.INFO, logger="gotcha"):
        response = client.get("/healthz")
    rid = response.headers.get("x-request-id")
    assert rid
    records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
    assert records, "Expected logs to contain request_id from response"
    assert records[-1].getMessage() == "request.complete"


def test_request_id_in_error_response(admission):
    client = TestClient(create_app(admission))
    response = client.post("/api/v1/responses", json={}, headers={"X-Request-Id": "rid-err-1"})
    assert response.status_code == 401
    assert response.json()["error"]["request_id"] == "rid-err-1"


def test_plaintext_key_never_logged(caplog, admission, tenant):
    client = TestClient(create_app(admission))
    with caplog.at_level(logging.DEBUG, logger="gotcha"):
        client.post(
            "/api/v1/responses",
            json={"elementId": "x", "mode": "feedback"},
            headers={"Authorization": f"Bearer {tenant['key']}", "Origin": "https://evil.com"},
        )
    for record in caplog.records:
        assert tenant["key"] not in record.getMessage()
        assert tenant["key"] not in json.dumps(record.__dict__, default=str)


def test_filter_injects_context_request_id():
    token = request_id_ctx_var.set("ctx-rid")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)
    assert record.request_id == "ctx-rid"


def test_json_formatter_promotes_fields():
    record = _record(request_id="r1", error_code="RATE_LIMITED", project_id="p1")
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "hello"
    assert payload["request_id"] == "r1"
    assert payload["error_code"] == "RATE_LIMITED"
    assert payload["project_id"] == "p1"
    assert payload["timestamp"].endswith("Z")


def test_pretty_formatter():
    line = PrettyFormatter().format(_record(request_id="r1", error_code="FORBIDDEN"))
    assert "[gotcha] [rid=r1] hello code=FORBIDDEN" in line


def test_log_event_truncates_extra(caplog):
    with caplog.at_level(logging.INFO, logger="gotcha"):
        log_event("info", "usage.recorded", request_id="r2", organization_id="o1", extra={"blob": "x" * 600})
    record = caplog.records[-1]
    assert record.request_id == "r2"
    assert record.organization_id == "o1"
    assert record.blob.endswith("...<truncated>")


def test_credentials_are_redacted():
    key = "gtch_live_" + "a" * 32
    record = _record(f"saw {key}", error_code=f"bad {key}")
    CredentialRedactionFilter().filter(record)
    assert record.getMessage() == "saw gtch_live_****"
    assert record.error_code == "bad gtch_live_****"
    assert redact_credentials("nothing here") == "nothing here"


def test_redaction_follows_configured_prefix():
    key = "acme_test_" + "b" * 32
    record = _record(f"saw {key} and gtch_live_{'c' * 32}", error_code=key)
    CredentialRedactionFilter(prefix="acme").filter(record)
    assert record.getMessage() == f"saw acme_test_**** and gtch_live_{'c' * 32}"
    assert record.error_code == "acme_test_****"


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(50) == "10-100ms"
    assert latency_bucket_ms(2000) == ">=1000ms"
