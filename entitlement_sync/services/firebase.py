"""Firebase Admin SDK context - explicit initialize/teardown.

The SDK is initialized once per process by the application lifespan (or the
CLI) and torn down on shutdown. Nothing initializes it as an import side effect.
"""

import os
import threading
from typing import Any, Optional

import firebase_admin
from firebase_admin import auth, credentials, firestore_async

from entitlement_sync.errors import ConfigurationError
from entitlement_sync.logging_config import get_logger

logger = get_logger(__name__)

APP_NAME = "entitlement-sync"


class FirebaseContext:
    """Owns the Firebase Admin app used for Firestore and ID-token checks."""

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
        app_name: str = APP_NAME,
    ):
        """Initialize context (does not touch the SDK yet).

        Args:
            credentials_path: Service-account key file; defaults to
                              GOOGLE_APPLICATION_CREDENTIALS, then ADC
            project_id: Firebase project; defaults to FIREBASE_PROJECT_ID
            app_name: Firebase app name, so tests can run isolated apps
        """
        self.credentials_path = credentials_path or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        self.project_id = project_id or os.getenv("FIREBASE_PROJECT_ID")
        self.app_name = app_name
        self._app: Optional[firebase_admin.App] = None
        self._firestore = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._app is not None

    @property
    def app(self) -> firebase_admin.App:
        if self._app is None:
            raise ConfigurationError("Firebase is not initialized")
        return self._app

    def initialize(self) -> firebase_admin.App:
        """Initialize the Firebase app (idempotent)."""
        with self._lock:
            if self._app is not None:
                return self._app

            if self.credentials_path:
                credential = credentials.Certificate(self.credentials_path)
            else:
                credential = credentials.ApplicationDefault()
            options = {"projectId": self.project_id} if self.project_id else None

            try:
                self._app = firebase_admin.initialize_app(credential, options, name=self.app_name)
            except ValueError as e:
                raise ConfigurationError(f"Firebase initialization failed: {e}") from e

            logger.info(
                "firebase_initialized",
                app_name=self.app_name,
                project_id=self.project_id,
                credentials="file" if self.credentials_path else "adc",
            )
            return self._app

    def firestore(self):
        """Async Firestore client bound to this app."""
        if self._firestore is None:
            self._firestore = firestore_async.client(self.app)
        return self._firestore

    def verify_id_token(self, id_token: str) -> dict[str, Any]:
        """Verify a Firebase ID token and return its decoded claims.

        Raises:
            ValueError, firebase_admin.auth.InvalidIdTokenError and friends
        """
        return auth.verify_id_token(id_token, app=self.app)

    def teardown(self) -> None:
        """Delete the Firebase app; safe to call when not initialized."""
        with self._lock:
            if self._app is None:
                return
            firebase_admin.delete_app(self._app)
            self._app = None
            self._firestore = None
            logger.info("firebase_torn_down", app_name=self.app_name)


# Global context instance
_context_instance: Optional[FirebaseContext] = None
_context_lock = threading.Lock()


def get_firebase_context() -> FirebaseContext:
    """Get global Firebase context (singleton, not initialized)."""
    global _context_instance
    if _context_instance is None:
        with _context_lock:
            if _context_instance is None:
                _context_instance = FirebaseContext()
    return _context_instance


def reset_firebase_context() -> None:
    """Tear down and drop the global Firebase context."""
    global _context_instance
    with _context_lock:
        if _context_instance is not None:
            _context_instance.teardown()
        _context_instance = None
