"""Tests for the Firebase Admin context lifecycle."""

import pytest

from entitlement_sync.errors import ConfigurationError
from entitlement_sync.services import firebase as firebase_module
from entitlement_sync.services.firebase import (
    FirebaseContext,
    get_firebase_context,
    reset_firebase_context,
)


class FakeSdk:
    """Records firebase_admin calls."""

    def __init__(self):
        self.initialized = []
        self.deleted = []
        self.verified = []

    def initialize_app(self, credential, options=None, name="[DEFAULT]"):
        app = object()
        self.initialized.append((credential, options, name, app))
        return app

    def delete_app(self, app):
        self.deleted.append(app)

    def verify_id_token(self, id_token, app=None):
        self.verified.append((id_token, app))
        return {"uid": "user-1"}


@pytest.fixture
def sdk(monkeypatch):
    fake = FakeSdk()
    monkeypatch.setattr(firebase_module.firebase_admin, "initialize_app", fake.initialize_app)
    monkeypatch.setattr(firebase_module.firebase_admin, "delete_app", fake.delete_app)
    monkeypatch.setattr(firebase_module.auth, "verify_id_token", fake.verify_id_token)
    monkeypatch.setattr(firebase_module.credentials, "ApplicationDefault", lambda: "adc")
    monkeypatch.setattr(firebase_module.credentials, "Certificate", lambda path: f"cert:{path}")
    monkeypatch.setattr(firebase_module.firestore_async, "client", lambda app: ("firestore", app))
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    monkeypatch.delenv("FIREBASE_PROJECT_ID", raising=False)
    return fake


class TestInitialize:
    """Explicit initialization."""

    def test_not_initialized_on_construction(self, sdk):
        context = FirebaseContext()
        assert context.is_initialized is False
        assert sdk.initialized == []
        with pytest.raises(ConfigurationError):
            context.app

    def test_application_default_credentials(self, sdk):
        context = FirebaseContext()
        app = context.initialize()
        credential, options, name, _ = sdk.initialized[0]
        assert credential == "adc"
        assert options is None
        assert name == "entitlement-sync"
        assert context.app is app

    def test_key_file_and_project(self, sdk):
        FirebaseContext(credentials_path="/secrets/firebase.json", project_id="demo").initialize()
        credential, options, _, _ = sdk.initialized[0]
        assert credential == "cert:/secrets/firebase.json"
        assert options == {"projectId": "demo"}

    def test_environment_defaults(self, sdk, monkeypatch):
        monkeypatch.setenv("FIREBASE_PROJECT_ID", "from-env")
        assert FirebaseContext().project_id == "from-env"

    def test_initialize_is_idempotent(self, sdk):
        context = FirebaseContext()
        assert context.initialize() is context.initialize()
        assert len(sdk.initialized) == 1

    def test_initialization_failure(self, sdk, monkeypatch):
        def fail(*args, **kwargs):
            raise ValueError("The default Firebase app already exists.")

        monkeypatch.setattr(firebase_module.firebase_admin, "initialize_app", fail)
        with pytest.raises(ConfigurationError):
            FirebaseContext().initialize()


class TestServices:
    """Firestore client and ID-token verification."""

    def test_firestore_client_is_cached(self, sdk):
        context = FirebaseContext()
        app = context.initialize()
        client = context.firestore()
        assert client == ("firestore", app)
        assert context.firestore() is client

    def test_verify_id_token_uses_app(self, sdk):
        context = FirebaseContext()
        app = context.initialize()
        assert context.verify_id_token("id-token") == {"uid": "user-1"}
        assert sdk.verified == [("id-token", app)]


class TestTeardown:
    """Shutdown."""

    def test_teardown_deletes_app(self, sdk):
        context = FirebaseContext()
        app = context.initialize()
        context.teardown()
        assert sdk.deleted == [app]
        assert context.is_initialized is False

    def test_teardown_without_init(self, sdk):
        FirebaseContext().teardown()
        assert sdk.deleted == []

    def test_reset_global_context(self, sdk):
        reset_firebase_context()
        context = get_firebase_context()
        assert get_firebase_context() is context
        context.initialize()
        reset_firebase_context()
        assert len(sdk.deleted) == 1
        assert get_firebase_context() is not context
        reset_firebase_context()
