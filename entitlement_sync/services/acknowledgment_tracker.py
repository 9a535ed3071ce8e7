"""Acknowledgment tracker - acknowledges each purchase token at most once.

The store's ``acknowledgedTokens`` ledger is checked before any remote call,
and a token is appended only after the platform confirms. Attempts for the
same token within this process are serialized.
"""

import asyncio
from typing import Dict, Optional

import httpx
from google.auth.exceptions import GoogleAuthError

from entitlement_sync.config import Config, get_config
from entitlement_sync.errors import (
    classify_error,
    is_already_acknowledged_error,
    is_permission_error,
    is_retryable,
    retry_delay_seconds,
    technical_message,
)
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.sync import (
    AcknowledgmentOutcome,
    AcknowledgmentStatus,
    ClassifiedError,
)
from entitlement_sync.models.verification import ProductKind
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.services.billing_client import PlayBillingClient
from entitlement_sync.state_logger import log_acknowledgment_recorded

logger = get_logger(__name__)


class AcknowledgmentTracker:
    """Idempotent acknowledgment of verified purchases."""

    def __init__(
        self,
        client: PlayBillingClient,
        store: EntitlementStore,
        config: Optional[Config] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.client = client
        self.store = store
        self.config = config or get_config()
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else self.config.billing.acknowledgment_timeout_seconds
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    async def acknowledge(
        self,
        user_id: str,
        purchase_token: str,
        product_id: str,
        product_kind: Optional[ProductKind] = None,
        platform_acknowledged: bool = False,
        attempt: int = 1,
    ) -> AcknowledgmentOutcome:
        """Acknowledge ``purchase_token`` unless it already has been.

        Args:
            user_id: Owner of the ledger
            purchase_token: Token to acknowledge
            product_id: Product (or subscription) ID the token belongs to
            product_kind: Endpoint family; resolved from the catalog if omitted
            platform_acknowledged: The verification payload already reports
                                   the purchase as acknowledged
            attempt: Attempt number, used for the suggested retry delay

        Returns:
            AcknowledgmentOutcome; failures are reported, never raised
        """
        self._waiters[purchase_token] = self._waiters.get(purchase_token, 0) + 1
        lock = self._locks.setdefault(purchase_token, asyncio.Lock())
        try:
            async with lock:
                return await self._acknowledge_locked(
                    user_id,
                    purchase_token,
                    product_id,
                    product_kind or self.config.resolve_product_kind(product_id),
                    platform_acknowledged,
                    attempt,
                )
        finally:
            self._waiters[purchase_token] -= 1
            if self._waiters[purchase_token] == 0:
                del self._waiters[purchase_token]
                self._locks.pop(purchase_token, None)

    async def _acknowledge_locked(
        self,
        user_id: str,
        purchase_token: str,
        product_id: str,
        product_kind: ProductKind,
        platform_acknowledged: bool,
        attempt: int,
    ) -> AcknowledgmentOutcome:
        if await self.store.is_acknowledged(user_id, purchase_token):
            logger.debug(
                "acknowledgment_skipped", user_id=user_id, token=purchase_token, reason="ledger"
            )
            return AcknowledgmentOutcome(
                status=AcknowledgmentStatus.ALREADY_ACKNOWLEDGED,
                purchase_token=purchase_token,
                product_id=product_id,
            )

        if platform_acknowledged:
            await self.store.record_acknowledgment(user_id, purchase_token)
            log_acknowledgment_recorded(
                user_id, purchase_token, product_id, remote_call=False, reason="platform"
            )
            return AcknowledgmentOutcome(
                status=AcknowledgmentStatus.ALREADY_ACKNOWLEDGED,
                purchase_token=purchase_token,
                product_id=product_id,
            )

        try:
            if product_kind == ProductKind.ONE_TIME:
                call = self.client.acknowledge_product(product_id, purchase_token)
            else:
                call = self.client.acknowledge_subscription(product_id, purchase_token)
            await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.HTTPError, GoogleAuthError, ValueError) as e:
            if is_already_acknowledged_error(e):
                await self.store.record_acknowledgment(user_id, purchase_token)
                log_acknowledgment_recorded(
                    user_id, purchase_token, product_id, remote_call=True, reason="conflict"
                )
                return AcknowledgmentOutcome(
                    status=AcknowledgmentStatus.ALREADY_ACKNOWLEDGED,
                    purchase_token=purchase_token,
                    product_id=product_id,
                )
            return self._failed(user_id, purchase_token, product_id, e, attempt)

        await self.store.record_acknowledgment(user_id, purchase_token)
        log_acknowledgment_recorded(user_id, purchase_token, product_id, remote_call=True)
        return AcknowledgmentOutcome(
            status=AcknowledgmentStatus.ACKNOWLEDGED,
            purchase_token=purchase_token,
            product_id=product_id,
        )

    def _failed(
        self,
        user_id: str,
        purchase_token: str,
        product_id: str,
        error: Exception,
        attempt: int,
    ) -> AcknowledgmentOutcome:
        kind = classify_error(error)
        retryable = is_retryable(kind)
        classified = ClassifiedError(
            kind=kind.value,
            message=technical_message(error) or type(error).__name__,
            retryable=retryable,
            retry_after_seconds=retry_delay_seconds(attempt) if retryable else None,
        )
        logger.warning(
            "acknowledgment_failed",
            user_id=user_id,
            token=purchase_token,
            product_id=product_id,
            error_kind=classified.kind,
            error=classified.message,
            retryable=retryable,
            permission_denied=is_permission_error(error),
        )
        return AcknowledgmentOutcome(
            status=AcknowledgmentStatus.FAILED,
            purchase_token=purchase_token,
            product_id=product_id,
            error=classified,
        )
