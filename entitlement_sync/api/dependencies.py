"""FastAPI dependencies: configuration, services, authentication, error bodies."""

import asyncio
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query
from firebase_admin import auth as firebase_auth

from entitlement_sync.config import Config, get_config
from entitlement_sync.errors import ErrorKind
from entitlement_sync.logging_config import bind_context, get_logger
from entitlement_sync.models.sync import ClassifiedError
from entitlement_sync.repositories.entitlement_store import (
    EntitlementStore,
    get_entitlement_store,
)
from entitlement_sync.services.firebase import get_firebase_context
from entitlement_sync.services.sync_orchestrator import SyncOrchestrator, get_sync_orchestrator

logger = get_logger(__name__)

# HTTP status and Google API status string per error kind
_ERROR_STATUS = {
    ErrorKind.TIMEOUT.value: (504, "DEADLINE_EXCEEDED"),
    ErrorKind.NETWORK.value: (503, "UNAVAILABLE"),
    ErrorKind.INVALID_TOKEN.value: (422, "INVALID_ARGUMENT"),
    ErrorKind.NOT_FOUND.value: (404, "NOT_FOUND"),
    ErrorKind.PLATFORM_ERROR.value: (502, "UNKNOWN"),
    ErrorKind.CONFLICT.value: (409, "ABORTED"),
    ErrorKind.GENERIC.value: (500, "INTERNAL"),
}


def api_error(
    status_code: int,
    message: str,
    status: str,
    kind: Optional[str] = None,
    retryable: bool = False,
) -> HTTPException:
    """HTTPException whose body is a Google-style ``{"error": {...}}`` object."""
    return HTTPException(
        status_code=status_code,
        detail={
            "error": {
                "code": status_code,
                "message": message,
                "status": status,
                "kind": kind,
                "retryable": retryable,
            }
        },
    )


def classified_api_error(error: ClassifiedError) -> HTTPException:
    status_code, status = _ERROR_STATUS.get(error.kind, (500, "INTERNAL"))
    return api_error(
        status_code,
        error.message or "Entitlement sync failed",
        status,
        kind=error.kind,
        retryable=error.retryable,
    )


def get_app_config() -> Config:
    return get_config()


def get_store() -> EntitlementStore:
    return get_entitlement_store()


def get_orchestrator() -> SyncOrchestrator:
    return get_sync_orchestrator()


async def get_current_user_id(
    authorization: Optional[str] = Header(None),
    config: Config = Depends(get_app_config),
) -> Optional[str]:
    """UID from the Firebase ID token; None when client auth is disabled."""
    if not config.auth_enabled:
        return None

    if not authorization or not authorization.startswith("Bearer "):
        raise api_error(401, "Missing or invalid Authorization header", "UNAUTHENTICATED")

    id_token = authorization[len("Bearer "):].strip()
    try:
        # Certificate fetches block
        decoded = await asyncio.to_thread(get_firebase_context().verify_id_token, id_token)
    except firebase_auth.CertificateFetchError as e:
        logger.error("id_token_certificate_fetch_failed", error=str(e))
        raise api_error(
            503, "Could not verify credentials", "UNAVAILABLE", ErrorKind.NETWORK.value, True
        ) from e
    except (ValueError, firebase_auth.InvalidIdTokenError) as e:
        logger.warning("id_token_rejected", error=str(e), error_type=type(e).__name__)
        raise api_error(401, "Invalid Firebase ID token", "UNAUTHENTICATED") from e

    uid = decoded["uid"]
    bind_context(caller_uid=uid)
    return uid


def require_same_user(caller_uid: Optional[str], user_id: str) -> None:
    """Reject callers acting on another user's entitlement."""
    if caller_uid is not None and caller_uid != user_id:
        logger.warning("caller_user_mismatch", caller_uid=caller_uid, user_id=user_id)
        raise api_error(403, "Caller may only access its own entitlement", "PERMISSION_DENIED")


def verify_webhook_token(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    config: Config = Depends(get_app_config),
) -> None:
    """Check the shared secret of a Pub/Sub push delivery.

    Accepts ``Authorization: Bearer <secret>`` or ``?token=<secret>``.
    With no secret configured every delivery is accepted.
    """
    expected = config.webhook_auth_token
    if not expected:
        return

    supplied = token
    if authorization and authorization.startswith("Bearer "):
        supplied = authorization[len("Bearer "):].strip()

    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        logger.warning("webhook_auth_failed", has_credentials=bool(supplied))
        raise api_error(401, "Invalid webhook credentials", "UNAUTHENTICATED")
