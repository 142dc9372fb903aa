from __future__ import annotations

import base64
import json
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from auth import AuthIdentity, issue_access_token
from config import ConfigError, ShopifySettings
from shopify_integration import (
    OAuthConnector,
    ShopifyApiClient,
    ShopifyRepository,
    SubscriptionStatus,
    TokenStatus,
    build_session_factory,
    compute_webhook_hmac,
    init_db,
    session_scope,
)
from shopify_integration.oauth import compute_callback_hmac

AUTH_SECRET = "test-secret"
SHOP = "demo-shop.myshopify.com"

SETTINGS = ShopifySettings(
    client_id="client-id",
    client_secret="client-secret",
    app_url="https://app.example",
    public_base_url="https://api.example",
)


def _unexpected(_request: httpx.Request) -> httpx.Response:
    raise AssertionError("unexpected remote call")


def _configure(monkeypatch, handler=_unexpected, calls: list[httpx.Request] | None = None):
    engine, session_factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_db(engine)
    recorded = calls if calls is not None else []

    def _recording(request: httpx.Request) -> httpx.Response:
        recorded.append(request)
        return handler(request)

    client = ShopifyApiClient(SETTINGS, transport=httpx.MockTransport(_recording), sleep=lambda _seconds: None)
    monkeypatch.setattr(main, "AUTH_TOKEN_SECRET", AUTH_SECRET)
    monkeypatch.setattr(main, "STARTUP_BOOTSTRAP_ENABLED", False)
    monkeypatch.setattr(main, "SHOPIFY_SETTINGS", SETTINGS)
    monkeypatch.setattr(main, "SHOPIFY_CLIENT", client)
    monkeypatch.setattr(main, "SESSION_FACTORY", session_factory)
    return engine, session_factory


def _auth_header(user_id: str = "user-1") -> dict[str, str]:
    token = issue_access_token(AuthIdentity(user_id=user_id), AUTH_SECRET)
    return {"Authorization": f"Bearer {token}"}


def _connect(session_factory, user_id: str = "user-1") -> None:
    with session_scope(session_factory) as session:
        ShopifyRepository(session).connect_shop(user_id, shop_domain=SHOP, access_token="shpat_token")


def _merchant(session_factory, user_id: str = "user-1"):
    with session_scope(session_factory) as session:
        return ShopifyRepository(session).get_merchant(user_id)


# ---------------------------------------------------------------------------
# Health, startup, auth
# ---------------------------------------------------------------------------


def test_health_reports_database(monkeypatch) -> None:
    engine, _sf = _configure(monkeypatch)
    with TestClient(main.app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["db"] == "ok"
    assert response.headers.get("X-Trace-Id")
    engine.dispose()


def test_startup_fails_without_shopify_credentials(monkeypatch) -> None:
    engine, _sf = _configure(monkeypatch)
    monkeypatch.setattr(main, "SHOPIFY_SETTINGS", ShopifySettings(client_id="", client_secret="", app_url="x", public_base_url="y"))
    with pytest.raises(ConfigError, match="SHOPIFY_CLIENT_ID"):
        with TestClient(main.app):
            pass
    engine.dispose()


def test_authenticated_endpoints_require_bearer_token(monkeypatch) -> None:
    engine, _sf = _configure(monkeypatch)
    with TestClient(main.app) as client:
        missing = client.post("/shopify/oauth/install", json={"shopDomain": SHOP})
        forged = client.post(
            "/shopify/oauth/install",
            json={"shopDomain": SHOP},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
    assert missing.status_code == 401
    assert forged.status_code == 401
    assert missing.json()["error"] == "UNAUTHORIZED"
    engine.dispose()


def test_unhandled_exceptions_are_normalized(monkeypatch) -> None:
    engine, _sf = _configure(monkeypatch)

    def _boom():
        raise RuntimeError("boom: should not leak")

    monkeypatch.setattr(main, "_billing_orchestrator", _boom)

    with TestClient(main.app, raise_server_exceptions=False) as client:
        response = client.post("/shopify/billing/cancel", headers=_auth_header())
    assert response.status_code == 500
    payload = response.json()
    assert payload["error_code"] == "INTERNAL_SERVER_ERROR"
    assert payload["message"] == "internal server error"
    assert payload["trace_id"] == response.headers.get("X-Trace-Id")
    assert "boom" not in response.text
    engine.dispose()


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def test_install_returns_link_and_rejects_bad_domain(monkeypatch) -> None:
    engine, _sf = _configure(monkeypatch)
    with TestClient(main.app) as client:
        ok = client.post("/shopify/oauth/install", json={"shopDomain": "https://Demo-Shop.myshopify.com/"}, headers=_auth_header())
        bad = client.post("/shopify/oauth/install", json={"shopDomain": "evil.com"}, headers=_auth_header())
        empty = client.post("/shopify/oauth/install", json={}, headers=_auth_header())

    assert ok.status_code == 200, ok.text
    assert ok.json()["shop"] == SHOP
    assert ok.json()["installUrl"].startswith(f"https://{SHOP}/admin/oauth/authorize?")
    assert bad.status_code == 400
    assert bad.json()["error_code"] == "INVALID_SHOP_DOMAIN"
    assert empty.status_code == 400
    engine.dispose()


def test_reauthorize_requires_connected_shop(monkeypatch) -> None:
    engine, sf = _configure(monkeypatch)
    with TestClient(main.app) as client:
        missing = client.post("/shopify/oauth/reauthorize", headers=_auth_header())
        _connect(sf)
        ok = client.post("/shopify/oauth/reauthorize", headers=_auth_header())

    assert missing.status_code == 404
    assert ok.status_code == 200
    assert ok.json()["shop"] == SHOP
    engine.dispose()


def test_oauth_callback_connects_shop_and_redirects(monkeypatch) -> None:
    calls: list[httpx.Request] = []

    def _exchange(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "shpat_fresh", "scope": "read_products"})

    engine, sf = _configure(monkeypatch, _exchange, calls)
    state = OAuthConnector(SETTINGS, main.SHOPIFY_CLIENT, sf).encode_state("user-1")
    params = {"code": "auth-code", "shop": SHOP, "state": state, "timestamp": str(int(time.time()))}
    params["hmac"] = compute_callback_hmac(params, SETTINGS.client_secret)

    with TestClient(main.app) as client:
        response = client.get("/shopify/oauth/callback", params=params, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example/settings?shop_connected=true"
    assert len(calls) == 1
    merchant = _merchant(sf)
    assert merchant.shop_domain == SHOP
    assert merchant.token_status == TokenStatus.ACTIVE
    assert "shpat_fresh" not in response.text
    engine.dispose()


def test_oauth_callback_failures_redirect_with_flag(monkeypatch) -> None:
    calls: list[httpx.Request] = []
    engine, sf = _configure(monkeypatch, lambda _r: httpx.Response(400, json={"error": "invalid_request"}), calls)
    state = OAuthConnector(SETTINGS, main.SHOPIFY_CLIENT, sf).encode_state("user-1")
    params = {"code": "auth-code", "shop": SHOP, "state": state, "timestamp": str(int(time.time()))}
    params["hmac"] = compute_callback_hmac(params, SETTINGS.client_secret)

    with TestClient(main.app) as client:
        tampered = client.get("/shopify/oauth/callback", params={**params, "code": "other"}, follow_redirects=False)
        stale_params = {**params, "timestamp": str(int(time.time()) - 3600)}
        stale_params["hmac"] = compute_callback_hmac(stale_params, SETTINGS.client_secret)
        stale = client.get("/shopify/oauth/callback", params=stale_params, follow_redirects=False)
        rejected = client.get("/shopify/oauth/callback", params=params, follow_redirects=False)

    def _flag(response) -> str:
        return parse_qs(urlparse(response.headers["location"]).query)["error"][0]

    assert tampered.status_code == 302
    assert _flag(tampered) == "invalid_signature"
    assert _flag(stale) == "request_expired"
    assert _flag(rejected) == "authorization_failed"
    assert len(calls) == 1
    assert _merchant(sf) is None
    engine.dispose()


def test_oauth_callback_with_non_finite_state_timestamp_redirects(monkeypatch) -> None:
    calls: list[httpx.Request] = []
    engine, sf = _configure(monkeypatch, calls=calls)
    state = base64.urlsafe_b64encode(b'{"userId": "user-1", "issuedAt": NaN, "nonce": "n"}').decode().rstrip("=")
    params = {"code": "auth-code", "shop": SHOP, "state": state, "timestamp": str(int(time.time()))}
    params["hmac"] = compute_callback_hmac(params, SETTINGS.client_secret)

    with TestClient(main.app) as client:
        response = client.get("/shopify/oauth/callback", params=params, follow_redirects=False)

    assert response.status_code == 302
    assert parse_qs(urlparse(response.headers["location"]).query)["error"][0] == "invalid_state"
    assert calls == []
    assert _merchant(sf) is None
    engine.dispose()


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


def test_create_charge_flows(monkeypatch) -> None:
    responses = iter(
        [
            httpx.Response(401, json={"errors": "[API] Invalid API key or access token"}),
            httpx.Response(
                201,
                json={"recurring_application_charge": {"id": 99, "confirmation_url": "https://confirm.example/99"}},
            ),
        ]
    )
    engine, sf = _configure(monkeypatch, lambda _r: next(responses))

    with TestClient(main.app) as client:
        not_connected = client.post("/shopify/billing/create-charge", headers=_auth_header())
        _connect(sf)
        rejected = client.post("/shopify/billing/create-charge", headers=_auth_header())
        created = client.post("/shopify/billing/create-charge", headers=_auth_header())

    assert not_connected.status_code == 400
    assert not_connected.json()["needsConnection"] is True
    assert rejected.status_code == 502
    assert "401" in rejected.json()["message"]
    assert "shpat_token" not in rejected.text
    assert created.status_code == 200
    assert created.json() == {"confirmationUrl": "https://confirm.example/99"}
    engine.dispose()


def test_confirm_charge_redirects(monkeypatch) -> None:
    responses = iter(
        [
            httpx.Response(422, json={"errors": "charge is not accepted"}),
            httpx.Response(200, json={"recurring_application_charge": {"id": 99, "status": "active"}}),
        ]
    )
    engine, sf = _configure(monkeypatch, lambda _r: next(responses))

    with TestClient(main.app) as client:
        not_connected = client.get(
            "/shopify/billing/confirm-charge",
            params={"charge_id": "99", "user_id": "user-1"},
            follow_redirects=False,
        )
        _connect(sf)
        failed = client.get(
            "/shopify/billing/confirm-charge",
            params={"charge_id": "99", "user_id": "user-1"},
            follow_redirects=False,
        )
        assert _merchant(sf).subscription_status == SubscriptionStatus.TRIAL
        activated = client.get(
            "/shopify/billing/confirm-charge",
            params={"charge_id": "99", "user_id": "user-1"},
            follow_redirects=False,
        )

    assert not_connected.headers["location"] == "https://app.example/dashboard?error=shop_not_connected"
    assert failed.headers["location"] == "https://app.example/dashboard?error=activation_failed"
    assert activated.status_code == 302
    assert activated.headers["location"] == "https://app.example/dashboard?subscription_activated=true"
    merchant = _merchant(sf)
    assert merchant.subscription_status == SubscriptionStatus.ACTIVE
    assert merchant.charge_id == "99"
    engine.dispose()


def test_cancel_endpoint(monkeypatch) -> None:
    engine, sf = _configure(monkeypatch, lambda _r: httpx.Response(500))

    with TestClient(main.app) as client:
        missing = client.post("/shopify/billing/cancel", headers=_auth_header())
        _connect(sf)
        with session_scope(sf) as session:
            ShopifyRepository(session).activate_subscription("user-1", charge_id="99")
        cancelled = client.post("/shopify/billing/cancel", headers=_auth_header())
        again = client.post("/shopify/billing/cancel", headers=_auth_header())

    assert missing.status_code == 404
    assert cancelled.status_code == 200
    assert cancelled.json()["success"] is True
    assert again.status_code == 200
    assert again.json()["message"] == "Subscription already cancelled"
    assert _merchant(sf).subscription_status == SubscriptionStatus.CANCELLED
    engine.dispose()


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def test_webhook_endpoint_verifies_raw_body(monkeypatch) -> None:
    engine, sf = _configure(monkeypatch)
    _connect(sf)
    body = json.dumps({"id": 1, "domain": SHOP}).encode()
    headers = {
        "X-Shopify-Shop-Domain": SHOP,
        "X-Shopify-Hmac-Sha256": compute_webhook_hmac(body, SETTINGS.client_secret),
        "X-Shopify-Topic": "app/uninstalled",
        "X-Shopify-Webhook-Id": "wh-api-1",
        "Content-Type": "application/json",
    }

    with TestClient(main.app) as client:
        wrong_method = client.get("/shopify/webhooks")
        forged = client.post("/shopify/webhooks", content=body, headers={**headers, "X-Shopify-Hmac-Sha256": "AAAA"})
        accepted = client.post("/shopify/webhooks", content=body, headers=headers)
        replayed = client.post("/shopify/webhooks", content=body, headers=headers)

    assert wrong_method.status_code == 405
    assert forged.status_code == 403
    assert accepted.status_code == 200
    assert replayed.status_code == 200
    assert replayed.json()["note"] == "already processed"
    assert _merchant(sf).token_status == TokenStatus.REVOKED
    engine.dispose()
