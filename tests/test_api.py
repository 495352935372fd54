"""HTTP surface tests: envelopes, auth headers, site key and payment routes."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from harmony_core.app import app
from harmony_core.service.gateway import YooKassaClient
from harmony_core.service.runtime import get_runtime

SITE_KEY = "harmony-site-secret-key-change-me"
PASSWORD = "long-enough-password"


@pytest.fixture
def client():
    return TestClient(app)


def _signup(client, email="api@example.com"):
    resp = client.post(
        "/v1/auth/register",
        json={"name": "Api", "surname": "User", "email": email, "password": PASSWORD},
    )
    assert resp.status_code == 200, resp.text
    code = get_runtime().store.get_pending_registration(email).code
    resp = client.post("/v1/auth/verify-email", json={"email": email, "code": code})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _bearer(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def _install_gateway(status="succeeded"):
    payments = {}

    def handler(request):
        if request.method == "POST":
            payment_id = f"yk-{len(payments) + 1}"
            payments[payment_id] = {
                "id": payment_id,
                "status": status,
                "metadata": json.loads(request.content)["metadata"],
            }
            return httpx.Response(
                200,
                json={"id": payment_id, "confirmation": {"confirmation_url": "https://pay/x"}},
            )
        payment_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json=payments[payment_id])

    get_runtime().payments.gateway = YooKassaClient(
        "shop", "secret", transport=httpx.MockTransport(handler)
    )
    return payments


class TestEnvelope:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["store"] == "memory"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    def test_validation_error_shape(self, client):
        resp = client.post(
            "/v1/auth/register",
            json={"name": "A", "surname": "B", "email": "not-an-email", "password": PASSWORD},
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"] == {"field": "email"}


class TestAuthRoutes:
    def test_signup_login_me(self, client):
        data = _signup(client)
        assert data["token_type"] == "Bearer"
        assert data["user"]["email"] == "api@example.com"

        resp = client.post("/v1/auth/login", json={"email": "api@example.com", "password": PASSWORD})
        assert resp.status_code == 200

        me = client.get("/v1/me", headers=_bearer(data))
        assert me.status_code == 200
        assert me.json()["data"]["subscription"] is None

    def test_me_requires_bearer(self, client):
        assert client.get("/v1/me").status_code == 401
        resp = client.get("/v1/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_lockout_sets_retry_after(self, client):
        _signup(client)
        for _ in range(7):
            resp = client.post("/v1/auth/login", json={"email": "api@example.com", "password": "wrong-one"})
            assert resp.status_code == 401
        resp = client.post("/v1/auth/login", json={"email": "api@example.com", "password": PASSWORD})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "180"
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_refresh_reuse_is_rejected(self, client):
        data = _signup(client)
        first = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert first.status_code == 200
        reused = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert reused.status_code == 401

    def test_logout_always_ok(self, client):
        resp = client.post("/v1/auth/logout", json={"refresh_token": "whatever"})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"message": "ok"}

    def test_profile_and_delete(self, client):
        data = _signup(client)
        resp = client.patch("/v1/me/profile", json={"name": "Renamed"}, headers=_bearer(data))
        assert resp.json()["data"]["name"] == "Renamed"
        again = client.patch("/v1/me/profile", json={"name": "Again"}, headers=_bearer(data))
        assert again.status_code == 400
        assert again.json()["error"]["details"]["retry_after_days"] == 14

        assert client.delete("/v1/me", headers=_bearer(data)).status_code == 200
        assert client.get("/v1/me", headers=_bearer(data)).status_code == 401


class TestPaymentRoutes:
    def test_plans_and_config(self, client):
        plans = client.get("/v1/payments/plans").json()["data"]["plans"]
        assert {p["id"] for p in plans} == {"1month", "6months"}
        config = client.get("/v1/payments/config").json()["data"]
        assert config["gateway_enabled"] is False
        assert config["demo_enabled"] is False

    def test_site_key_required(self, client):
        body = {"plan_id": "1month", "email_or_id": "api@example.com", "return_url": "https://r"}
        assert client.post("/v1/payments/create", json=body).status_code == 403
        resp = client.post(
            "/v1/payments/create", json=body, headers={"X-Harmony-Site-Key": "wrong"}
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_create_without_gateway_is_unavailable(self, client):
        _signup(client)
        resp = client.post(
            "/v1/payments/create",
            json={"plan_id": "1month", "email_or_id": "api@example.com", "return_url": "https://r"},
            headers={"X-Harmony-Site-Key": SITE_KEY},
        )
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"

    def test_create_then_webhook_grants_premium(self, client):
        data = _signup(client)
        _install_gateway()
        resp = client.post(
            "/v1/payments/create",
            json={"plan_id": "1month", "email_or_id": "api@example.com", "return_url": "https://r"},
            headers={"X-Harmony-Site-Key": SITE_KEY},
        )
        assert resp.status_code == 200, resp.text
        payment_id = resp.json()["data"]["payment_id"]

        hook = client.post(
            "/v1/payments/yookassa/webhook",
            json={"type": "notification", "event": "payment.succeeded", "object": {"id": payment_id}},
        )
        assert hook.json()["data"] == {"received": True, "granted": True}

        confirm = client.post(
            "/v1/payments/confirm-return",
            json={"payment_id": payment_id},
            headers={"X-Harmony-Site-Key": SITE_KEY},
        )
        assert confirm.json()["data"] == {"granted": True}

        me = client.get("/v1/me", headers=_bearer(data)).json()["data"]
        assert me["subscription"] == "PREMIUM"
        assert me["subscription_product_id"] == "1month"

    def test_webhook_acknowledges_garbage(self, client):
        resp = client.post(
            "/v1/payments/yookassa/webhook",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"received": True}

    def test_demo_disabled(self, client):
        _signup(client)
        resp = client.post(
            "/v1/payments/demo",
            json={"plan_id": "1month", "email_or_id": "api@example.com"},
            headers={"X-Harmony-Site-Key": SITE_KEY},
        )
        assert resp.status_code == 403

    def test_apple_verify_unconfigured(self, client):
        data = _signup(client)
        resp = client.post(
            "/v1/payments/apple/verify", json={"receipt": "abc"}, headers=_bearer(data)
        )
        assert resp.status_code == 503
