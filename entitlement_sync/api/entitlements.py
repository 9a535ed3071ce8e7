"""Client-facing entitlement endpoints.

Implements:
- POST /v1/entitlements/sync
- GET  /v1/entitlements/{userId}
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path

from entitlement_sync.api.dependencies import (
    classified_api_error,
    get_current_user_id,
    get_orchestrator,
    get_store,
    require_same_user,
)
from entitlement_sync.logging_config import bind_context, get_logger
from entitlement_sync.models.api import (
    AcknowledgmentView,
    EntitlementView,
    SyncRequest,
    SyncResponse,
)
from entitlement_sync.models.sync import SyncOutcome, SyncStatus
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.services.sync_orchestrator import SyncOrchestrator

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/entitlements", tags=["Entitlements"])


def _to_response(outcome: SyncOutcome) -> SyncResponse:
    record = outcome.entitlement
    acknowledgment = None
    if outcome.acknowledgment is not None:
        acknowledgment = AcknowledgmentView(
            status=outcome.acknowledgment.status.value,
            error=outcome.acknowledgment.error,
        )

    return SyncResponse(
        userId=outcome.user_id,
        status=outcome.status.value,
        isPremium=outcome.is_premium,
        guardBlocked=outcome.status == SyncStatus.GUARD_BLOCKED,
        source=record.source.value if record else None,
        entitlementType=record.entitlement_type.value if record else None,
        productId=record.product_id if record else None,
        verificationStatus=outcome.verification_status,
        expiresAt=record.expires_at if record else None,
        lastVerifiedAt=record.last_verified_at if record else None,
        acknowledgment=acknowledgment,
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_entitlement(
    request: SyncRequest,
    caller_uid: Optional[str] = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResponse:
    """Re-verify the caller's purchase and reconcile the stored entitlement.

    Without a purchase token the stored premium flag is only lowered when
    ``allowDowngrade`` is set.
    """
    require_same_user(caller_uid, request.userId)
    bind_context(user_id=request.userId, product_id=request.productId)

    outcome = await orchestrator.sync(
        request.userId,
        request.productId,
        purchase_token=request.purchaseToken,
        allow_downgrade=request.allowDowngrade,
    )
    if outcome.failed:
        raise classified_api_error(outcome.error)

    return _to_response(outcome)


@router.get("/{userId}", response_model=EntitlementView)
async def get_entitlement(
    userId: str = Path(...),
    caller_uid: Optional[str] = Depends(get_current_user_id),
    store: EntitlementStore = Depends(get_store),
) -> EntitlementView:
    require_same_user(caller_uid, userId)
    snapshot = await store.read(userId)
    return EntitlementView(userId=userId, isPremium=snapshot.is_premium)
