"""Shared fixtures: test settings, a fake Android Publisher API and wired services."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from entitlement_sync.config import Config
from entitlement_sync.repositories.entitlement_store import InMemoryEntitlementStore
from entitlement_sync.services.acknowledgment_tracker import AcknowledgmentTracker
from entitlement_sync.services.billing_client import PlayBillingClient
from entitlement_sync.services.purchase_verifier import PurchaseVerifier
from entitlement_sync.services.sync_orchestrator import SyncOrchestrator

PACKAGE_NAME = "com.example.app"
SUBSCRIPTION_ID = "premium_yearly"
LIFETIME_ID = "premium_lifetime"

TEST_SETTINGS = f"""
package_name: {PACKAGE_NAME}
legacy_lifetime_product_id: {LIFETIME_ID}
products:
  - id: {LIFETIME_ID}
    type: inapp
    title: Premium Lifetime
  - id: {SUBSCRIPTION_ID}
    type: subs
    title: Premium Yearly
    plan: yearly
billing:
  api_base_url: http://billing.test
  verification_timeout_seconds: 1
  acknowledgment_timeout_seconds: 1
  require_credentials: false
store:
  backend: memory
  collection: entitlements
auth:
  enabled: false
webhook:
  auth_token: rtdn-secret
"""

ENV_OVERRIDES = (
    "CONFIG_PATH",
    "STORE_BACKEND",
    "BILLING_API_BASE_URL",
    "PLAY_SERVICE_ACCOUNT_FILE",
    "PLAY_SERVICE_ACCOUNT_JSON",
    "RTDN_WEBHOOK_TOKEN",
    "AUTH_ENABLED",
)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def subscription_payload(
    state: str = "SUBSCRIPTION_STATE_ACTIVE",
    expires_in: timedelta = timedelta(days=30),
    product_id: str = SUBSCRIPTION_ID,
    acknowledged: bool = False,
    auto_renew: bool = True,
) -> dict:
    """A subscriptionsv2 response body."""
    now = datetime.now(timezone.utc)
    return {
        "kind": "androidpublisher#subscriptionPurchaseV2",
        "startTime": iso(now - timedelta(days=1)),
        "subscriptionState": state,
        "latestOrderId": "GPA.1111-2222-3333-44444",
        "acknowledgementState": (
            "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED" if acknowledged else "ACKNOWLEDGEMENT_STATE_PENDING"
        ),
        "lineItems": [
            {
                "productId": product_id,
                "expiryTime": iso(now + expires_in),
                "autoRenewingPlan": {"autoRenewEnabled": auto_renew},
                "offerDetails": {"basePlanId": "yearly"},
            }
        ],
    }


def product_payload(purchase_state: int = 0, acknowledged: bool = False) -> dict:
    """A products.get response body."""
    return {
        "kind": "androidpublisher#productPurchase",
        "purchaseTimeMillis": "1700000000000",
        "purchaseState": purchase_state,
        "consumptionState": 0,
        "acknowledgementState": 1 if acknowledged else 0,
        "orderId": "GPA.9999-8888-7777-66666",
        "productId": LIFETIME_ID,
    }


def google_error(status_code: int, message: str) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={"error": {"code": status_code, "message": message, "status": "ERROR"}},
    )


class FakePlayBilling:
    """In-process Android Publisher API served through httpx.MockTransport.

    Tokens missing from ``subscriptions``/``products`` return 404.
    ``errors`` maps a token to a (status, message) answered on every call,
    ``ack_errors`` the same for acknowledge calls only.
    """

    def __init__(self):
        self.subscriptions: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.errors: dict[str, tuple[int, str]] = {}
        self.ack_errors: dict[str, tuple[int, str]] = {}
        self.delay: float = 0.0
        self.calls: list[tuple[str, str]] = []
        self.acknowledged: list[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, kind: str) -> int:
        return sum(1 for _, path in self.calls if kind in path)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if self.delay:
            await asyncio.sleep(self.delay)

        if path.endswith(":acknowledge"):
            token = path[: -len(":acknowledge")].rsplit("/", 1)[-1]
            if token in self.ack_errors:
                return google_error(*self.ack_errors[token])
            self.acknowledged.append(token)
            return httpx.Response(200)

        token = path.rsplit("/", 1)[-1]
        if token in self.errors:
            return google_error(*self.errors[token])

        if "/subscriptionsv2/tokens/" in path:
            payload = self.subscriptions.get(token)
        else:
            payload = self.products.get(token)
        if payload is None:
            return google_error(404, "The purchase token was not found.")
        return httpx.Response(200, json=payload)


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    """Write test settings and clear environment overrides."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(TEST_SETTINGS, encoding="utf-8")
    return path


@pytest.fixture
def config(settings_file):
    return Config(str(settings_file))


@pytest.fixture
def fake_billing():
    return FakePlayBilling()


@pytest.fixture
def billing_client(config, fake_billing):
    return PlayBillingClient(
        package_name=config.package_name,
        base_url=config.billing.api_base_url,
        credentials=None,
        timeout=5,
        transport=fake_billing.transport(),
    )


@pytest.fixture
def store():
    store = InMemoryEntitlementStore()
    yield store
    store.clear()


@pytest.fixture
def verifier(billing_client, config):
    return PurchaseVerifier(billing_client, config)


@pytest.fixture
def tracker(billing_client, store, config):
    return AcknowledgmentTracker(billing_client, store, config)


@pytest.fixture
def orchestrator(store, verifier, tracker, config):
    return SyncOrchestrator(store=store, verifier=verifier, tracker=tracker, config=config)


@pytest.fixture
def api(settings_file, config, store, orchestrator, monkeypatch):
    """TestClient with the services above injected (lifespan not run)."""
    from fastapi.testclient import TestClient

    from entitlement_sync.api.dependencies import get_app_config, get_orchestrator, get_store
    from entitlement_sync.config import reset_config
    from entitlement_sync.main import app

    monkeypatch.setenv("CONFIG_PATH", str(settings_file))
    reset_config()
    app.dependency_overrides[get_app_config] = lambda: config
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_config()
