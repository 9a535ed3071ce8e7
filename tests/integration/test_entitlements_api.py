"""Integration tests for the client entitlement endpoints.

Drives the FastAPI app through TestClient with an in-memory store and the
fake Android Publisher API.
"""

import pytest
from firebase_admin import auth as firebase_auth

from conftest import LIFETIME_ID, SUBSCRIPTION_ID, product_payload, subscription_payload
from entitlement_sync.api import dependencies
from entitlement_sync.api.dependencies import get_app_config
from entitlement_sync.config import Config
from entitlement_sync.main import app
from entitlement_sync.models.entitlement import EntitlementRecord, EntitlementSource
from entitlement_sync.services.purchase_verifier import PurchaseVerifier
from entitlement_sync.services.sync_orchestrator import SyncOrchestrator


class FakeFirebase:
    """verify_id_token backed by a token -> uid map."""

    def __init__(self, tokens):
        self.tokens = tokens

    def verify_id_token(self, id_token):
        if id_token == "certs-down":
            raise firebase_auth.CertificateFetchError("fetch failed", cause=None)
        if id_token not in self.tokens:
            raise ValueError("Could not verify token")
        return {"uid": self.tokens[id_token]}


@pytest.fixture
def auth_api(api, settings_file, monkeypatch):
    """API client with Firebase ID token checks enabled."""
    monkeypatch.setenv("AUTH_ENABLED", "true")
    auth_config = Config(str(settings_file))
    app.dependency_overrides[get_app_config] = lambda: auth_config
    monkeypatch.setattr(
        dependencies, "get_firebase_context", lambda: FakeFirebase({"id-token-1": "user-1"})
    )
    return api


def sync_body(token=None, product_id=SUBSCRIPTION_ID, allow_downgrade=False):
    body = {"userId": "user-1", "productId": product_id, "allowDowngrade": allow_downgrade}
    if token is not None:
        body["purchaseToken"] = token
    return body


class TestServiceEndpoints:
    """Root and health endpoints."""

    def test_root(self, api):
        response = api.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "entitlement-sync"

    def test_health(self, api):
        data = api.get("/health").json()
        assert data["status"] == "healthy"
        assert data["store"] == "memory"
        assert data["config"] == "loaded (2 products)"

    def test_request_id_is_echoed(self, api):
        response = api.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestSyncEndpoint:
    """POST /v1/entitlements/sync"""

    def test_active_subscription(self, api, store, fake_billing):
        fake_billing.subscriptions["token-1"] = subscription_payload()

        response = api.post("/v1/entitlements/sync", json=sync_body("token-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["userId"] == "user-1"
        assert data["status"] == "synced"
        assert data["isPremium"] is True
        assert data["guardBlocked"] is False
        assert data["source"] == "store-verified"
        assert data["entitlementType"] == "subscription"
        assert data["verificationStatus"] == "active"
        assert data["acknowledgment"]["status"] == "acknowledged"
        assert data["expiresAt"] is not None

    def test_lifetime_purchase(self, api, fake_billing):
        fake_billing.products["life-1"] = product_payload()
        data = api.post(
            "/v1/entitlements/sync", json=sync_body("life-1", product_id=LIFETIME_ID)
        ).json()
        assert data["isPremium"] is True
        assert data["entitlementType"] == "lifetime"

    def test_guard_blocked_downgrade(self, api, store, fake_billing):
        store.put(
            EntitlementRecord(
                user_id="user-1", is_premium=True, source=EntitlementSource.MANUAL_GRANT
            )
        )
        fake_billing.subscriptions["token-1"] = subscription_payload(
            state="SUBSCRIPTION_STATE_EXPIRED"
        )

        data = api.post("/v1/entitlements/sync", json=sync_body("token-1")).json()

        assert data["status"] == "guard-blocked"
        assert data["guardBlocked"] is True
        assert data["isPremium"] is True
        assert data["source"] == "manual-grant"
        assert data["verificationStatus"] == "expired"

    def test_token_less_without_record(self, api):
        data = api.post("/v1/entitlements/sync", json=sync_body()).json()
        assert data["status"] == "unchanged"
        assert data["isPremium"] is False
        assert data["source"] is None

    def test_token_less_explicit_downgrade(self, api, store):
        store.put(EntitlementRecord(user_id="user-1", is_premium=True))
        data = api.post("/v1/entitlements/sync", json=sync_body(allow_downgrade=True)).json()
        assert data["status"] == "synced"
        assert data["isPremium"] is False
        assert data["source"] == "unknown"

    def test_acknowledgment_failure_is_reported(self, api, fake_billing):
        fake_billing.subscriptions["token-1"] = subscription_payload()
        fake_billing.ack_errors["token-1"] = (503, "Backend unavailable")

        response = api.post("/v1/entitlements/sync", json=sync_body("token-1"))

        assert response.status_code == 200
        data = response.json()
        assert data["isPremium"] is True
        assert data["acknowledgment"]["status"] == "failed"
        assert data["acknowledgment"]["error"]["retryable"] is True

    @pytest.mark.parametrize(
        "status_code,http_status,kind,retryable",
        [
            (400, 422, "invalid-token", False),
            (503, 503, "network", True),
            (500, 503, "network", True),
            (403, 502, "platform-error", False),
        ],
    )
    def test_verification_failures(
        self, api, fake_billing, status_code, http_status, kind, retryable
    ):
        fake_billing.errors["bad-token"] = (status_code, "failure")

        response = api.post("/v1/entitlements/sync", json=sync_body("bad-token"))

        assert response.status_code == http_status
        error = response.json()["error"]
        assert error["code"] == http_status
        assert error["kind"] == kind
        assert error["retryable"] is retryable
        assert "bad-token" not in error["message"]

    def test_timeout(self, api, billing_client, store, tracker, config, fake_billing):
        fake_billing.subscriptions["slow-token"] = subscription_payload()
        fake_billing.delay = 0.5
        slow = SyncOrchestrator(
            store, PurchaseVerifier(billing_client, config, timeout_seconds=0.05), tracker, config
        )
        app.dependency_overrides[dependencies.get_orchestrator] = lambda: slow

        response = api.post("/v1/entitlements/sync", json=sync_body("slow-token"))

        assert response.status_code == 504
        assert response.json()["error"]["status"] == "DEADLINE_EXCEEDED"
        assert len(store) == 0

    def test_missing_fields(self, api):
        response = api.post("/v1/entitlements/sync", json={"userId": "user-1"})
        assert response.status_code == 422


class TestGetEntitlement:
    """GET /v1/entitlements/{userId}"""

    def test_unknown_user(self, api):
        response = api.get("/v1/entitlements/user-1")
        assert response.status_code == 200
        assert response.json() == {"userId": "user-1", "isPremium": False}

    def test_premium_user(self, api, store):
        store.put(EntitlementRecord(user_id="user-1", is_premium=True))
        assert api.get("/v1/entitlements/user-1").json()["isPremium"] is True


class TestAuthentication:
    """Firebase ID token checks."""

    def test_missing_header(self, auth_api):
        response = auth_api.get("/v1/entitlements/user-1")
        assert response.status_code == 401
        assert response.json()["error"]["status"] == "UNAUTHENTICATED"

    def test_invalid_token(self, auth_api):
        response = auth_api.get(
            "/v1/entitlements/user-1", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_valid_token(self, auth_api):
        response = auth_api.get(
            "/v1/entitlements/user-1", headers={"Authorization": "Bearer id-token-1"}
        )
        assert response.status_code == 200

    def test_other_users_entitlement(self, auth_api):
        response = auth_api.get(
            "/v1/entitlements/user-2", headers={"Authorization": "Bearer id-token-1"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["status"] == "PERMISSION_DENIED"

    def test_sync_for_other_user(self, auth_api):
        body = {**sync_body(), "userId": "user-2"}
        response = auth_api.post(
            "/v1/entitlements/sync", json=body, headers={"Authorization": "Bearer id-token-1"}
        )
        assert response.status_code == 403

    def test_certificate_fetch_failure(self, auth_api):
        response = auth_api.get(
            "/v1/entitlements/user-1", headers={"Authorization": "Bearer certs-down"}
        )
        assert response.status_code == 503
        assert response.json()["error"]["retryable"] is True
