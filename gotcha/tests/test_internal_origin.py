"""Tests for the same-site guard on internal SDK endpoints."""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from gotcha.main import create_app


CHECK = "/api/v1/internal/responses/check"
SITE = "https://gotcha.test"


@pytest.fixture
def internal_client(admission, tenant):
    configured = replace(admission, app_host="gotcha.test", internal_api_key=tenant["key"])
    return TestClient(create_app(configured))


def test_missing_origin_is_forbidden(internal_client):
    resp = internal_client.get(CHECK, params={"elementId": "a", "userId": "u1"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"
    assert resp.json()["error"]["message"] == "Cross-origin requests not allowed"


def test_lookalike_origin_is_forbidden(internal_client):
    resp = internal_client.get(
        CHECK, params={"elementId": "a", "userId": "u1"}, headers={"Origin": "https://gotcha.test.evil.com"}
    )
    assert resp.status_code == 403


def test_same_site_request_passes(internal_client):
    resp = internal_client.get(CHECK, params={"elementId": "a", "userId": "u1"}, headers={"Origin": SITE})
    assert resp.status_code == 200
    assert resp.json() == {"exists": False}


def test_missing_params(internal_client):
    resp = internal_client.get(CHECK, params={"elementId": "a"}, headers={"Origin": SITE})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "elementId and userId are required"


def test_finds_existing_response(internal_client, tenant):
    internal_client.post(
        "/api/v1/responses",
        json={"elementId": "a", "mode": "vote", "vote": "down", "user": {"id": "u1", "plan": "team"}},
        headers={"Authorization": f"Bearer {tenant['key']}"},
    )
    resp = internal_client.get(CHECK, params={"elementId": "a", "userId": "u1"}, headers={"Origin": SITE})
    body = resp.json()
    assert body["exists"] is True
    assert body["response"]["vote"] == "down"
    assert body["response"]["user"]["id"] == "u1"


def test_host_header_used_without_configured_host(admission, tenant):
    client = TestClient(create_app(replace(admission, internal_api_key=tenant["key"])))
    resp = client.get(CHECK, params={"elementId": "a", "userId": "u1"}, headers={"Origin": "http://testserver"})
    assert resp.status_code == 200


def test_unconfigured_internal_key(admission):
    client = TestClient(create_app(replace(admission, app_host="gotcha.test")))
    resp = client.get(CHECK, params={"elementId": "a", "userId": "u1"}, headers={"Origin": SITE})
    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "SDK not configured"
