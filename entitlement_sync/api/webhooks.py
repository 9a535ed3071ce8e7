"""Billing webhook - Real-time Developer Notifications over Pub/Sub push.

Implements:
- POST /v1/webhooks/play-rtdn

Pub/Sub redelivers on any non-2xx response, so only retryable failures
return 503; undecodable, foreign, test and unlinked deliveries are
acknowledged with 200.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from entitlement_sync.api.dependencies import (
    get_app_config,
    get_orchestrator,
    get_store,
    verify_webhook_token,
)
from entitlement_sync.config import Config
from entitlement_sync.logging_config import bind_context, get_logger
from entitlement_sync.models.api import WebhookResponse
from entitlement_sync.models.events import PubSubPushEnvelope
from entitlement_sync.models.sync import SyncStatus
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.services.sync_orchestrator import SyncOrchestrator

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


@router.post(
    "/play-rtdn",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_token)],
)
async def play_rtdn(
    request: Request,
    config: Config = Depends(get_app_config),
    store: EntitlementStore = Depends(get_store),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        envelope = PubSubPushEnvelope.model_validate(await request.json())
        notification = envelope.decode_notification()
    except ValueError as e:
        logger.warning("rtdn_undecodable", error=str(e))
        return WebhookResponse(status="ignored")

    bind_context(message_id=envelope.message.message_id, rtdn_kind=notification.kind)

    if notification.package_name != config.package_name:
        logger.warning(
            "rtdn_foreign_package",
            package_name=notification.package_name,
            expected=config.package_name,
        )
        return WebhookResponse(status="ignored")

    purchase_token = notification.purchase_token
    if notification.test_notification is not None or purchase_token is None:
        logger.info("rtdn_ignored", kind=notification.kind)
        return WebhookResponse(status="ignored")

    user_id = await store.find_user_by_token(purchase_token)
    if user_id is None:
        # Purchase not linked yet; the client re-sync will link it
        logger.info("rtdn_unlinked_token", token=purchase_token, kind=notification.kind)
        return WebhookResponse(status="unlinked")
    bind_context(user_id=user_id)

    product_id = notification.product_id
    if product_id is None:
        snapshot = await store.read(user_id)
        product_id = snapshot.record.product_id if snapshot.record else None
    if product_id is None:
        logger.warning("rtdn_product_unknown", user_id=user_id, kind=notification.kind)
        return WebhookResponse(status="ignored", userId=user_id)

    allow_downgrade = notification.carries_downgrade_intent
    logger.info(
        "rtdn_received",
        user_id=user_id,
        product_id=product_id,
        kind=notification.kind,
        allow_downgrade=allow_downgrade,
    )

    outcome = await orchestrator.sync(
        user_id,
        product_id,
        purchase_token=purchase_token,
        allow_downgrade=allow_downgrade,
    )

    if outcome.failed:
        body = WebhookResponse(ok=False, status="failed", userId=user_id)
        if outcome.error is not None and outcome.error.retryable:
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    status = "guard-blocked" if outcome.status == SyncStatus.GUARD_BLOCKED else "processed"
    return WebhookResponse(status=status, userId=user_id)
