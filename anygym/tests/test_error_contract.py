"""Normalized error responses, request ids and bearer authentication."""
import time

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from anygym.core.config import settings
from anygym.core.middleware.request_id import RequestIdMiddleware
from anygym.features.users.service import get_user_by_external_id
from anygym.tests.mocks import seed_gym, seed_subscription, seed_user

JWT_SECRET = "test-signing-secret-with-enough-length-0123456789"


@pytest.fixture
def jwt_settings(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(settings, "AUTH_JWT_AUDIENCE", None)
    monkeypatch.setattr(settings, "AUTH_JWT_ISSUER", None)
    yield


def _token(sub="auth0|carol", exp_offset=300, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + exp_offset, **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def test_error_body_carries_request_id(client):
    resp = client.post("/passes", json={"gymId": 1}, headers={"X-Request-Id": "rid-123"})

    assert resp.status_code == 401
    body = resp.json()
    assert resp.headers.get("x-request-id") == "rid-123"
    assert body["error"]["request_id"] == "rid-123"
    assert body["error"]["code"] == "unauthorized"
    assert body["detail"] == body["error"]["message"]


def test_unknown_route_is_normalized(client):
    resp = client.get("/nope")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_bearer_token_establishes_identity(client, jwt_settings):
    gym_id = seed_gym("Central Fitness")

    resp = client.post(
        "/passes",
        json={"gymId": gym_id},
        headers={"Authorization": f"Bearer {_token(email='carol@example.com', name='Carol Jones')}"},
    )

    # Authenticated but unsubscribed
    assert resp.status_code == 403
    user = get_user_by_external_id("auth0|carol")
    assert user.email == "carol@example.com"
    assert user.full_name == "Carol Jones"


def test_bearer_token_issues_pass(client, jwt_settings):
    user_id = seed_user("auth0|carol")
    seed_subscription(user_id)
    gym_id = seed_gym("Central Fitness")

    resp = client.post("/passes", json={"gymId": gym_id}, headers={"Authorization": f"Bearer {_token()}"})

    assert resp.status_code == 201


def test_expired_token_is_unauthorized(client, jwt_settings):
    resp = client.get("/passes", headers={"Authorization": f"Bearer {_token(exp_offset=-60)}"})

    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Token expired"


def test_token_signed_with_other_key_is_unauthorized(client, jwt_settings):
    forged = jwt.encode({"sub": "auth0|mallory", "exp": int(time.time()) + 60}, "some-other-secret-of-sufficient-length-0000", algorithm="HS256")

    resp = client.get("/passes", headers={"Authorization": f"Bearer {forged}"})

    assert resp.status_code == 401


def test_token_without_subject_is_unauthorized(client, jwt_settings):
    resp = client.get("/passes", headers={"Authorization": f"Bearer {_token(sub='')}"})

    assert resp.status_code == 401


def test_header_fallback_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", False)

    resp = client.get("/passes", headers={"X-User-Id": "auth0|alice"})

    assert resp.status_code == 401


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    return app


def test_generates_request_id_when_missing():
    resp = TestClient(_make_app()).get("/")

    assert resp.status_code == 200
    assert resp.headers.get("x-request-id")
    assert resp.headers.get("x-request-id") == resp.json().get("request_id")
