"""Purchase verifier - authoritative purchase state from the billing platform.

Fetches the subscription or one-time purchase for a token and maps the
platform state onto a VerificationStatus. Only ``active`` and
``grace-period`` grant access.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from google.auth.exceptions import GoogleAuthError
from pydantic import ValidationError

from entitlement_sync.config import Config, get_config
from entitlement_sync.errors import (
    ErrorKind,
    VerificationError,
    classify_error,
    is_permission_error,
    status_code_of,
    technical_message,
)
from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.billing import (
    SUBSCRIPTION_STATE_ACTIVE,
    SUBSCRIPTION_STATE_CANCELED,
    SUBSCRIPTION_STATE_EXPIRED,
    SUBSCRIPTION_STATE_IN_GRACE_PERIOD,
    SUBSCRIPTION_STATE_ON_HOLD,
    SUBSCRIPTION_STATE_PAUSED,
    SUBSCRIPTION_STATE_PENDING,
    SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED,
    ProductPurchase,
    PurchaseState,
    SubscriptionPurchaseV2,
)
from entitlement_sync.models.verification import (
    ProductKind,
    VerificationResult,
    VerificationStatus,
)
from entitlement_sync.services.billing_client import PlayBillingClient

logger = get_logger(__name__)

# Kinds a verification failure may surface as
VERIFICATION_ERROR_KINDS = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.INVALID_TOKEN,
        ErrorKind.PLATFORM_ERROR,
    }
)

# States whose status does not depend on the expiry time
_FIXED_SUBSCRIPTION_STATUSES = {
    SUBSCRIPTION_STATE_IN_GRACE_PERIOD: VerificationStatus.GRACE_PERIOD,
    SUBSCRIPTION_STATE_ON_HOLD: VerificationStatus.ON_HOLD,
    SUBSCRIPTION_STATE_PAUSED: VerificationStatus.PAUSED,
    SUBSCRIPTION_STATE_PENDING: VerificationStatus.PENDING,
    SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED: VerificationStatus.CANCELED,
    SUBSCRIPTION_STATE_EXPIRED: VerificationStatus.EXPIRED,
}

_PRODUCT_STATUSES = {
    PurchaseState.PURCHASED: VerificationStatus.ACTIVE,
    PurchaseState.CANCELED: VerificationStatus.CANCELED,
    PurchaseState.PENDING: VerificationStatus.PENDING,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PurchaseVerifier:
    """Verifies purchase tokens against the Android Publisher API."""

    def __init__(
        self,
        client: PlayBillingClient,
        config: Optional[Config] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize verifier.

        Args:
            client: Billing API client
            config: Configuration (defaults to global config)
            timeout_seconds: Upper bound for one verification call
            clock: Source of "now" for expiry comparisons
        """
        self.client = client
        self.config = config or get_config()
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else self.config.billing.verification_timeout_seconds
        )
        self._clock = clock

    async def verify(self, product_id: str, purchase_token: str) -> VerificationResult:
        """Fetch and classify the purchase behind ``purchase_token``.

        Args:
            product_id: Billing product ID
            purchase_token: Token issued by the billing platform

        Returns:
            VerificationResult (status ``not-found`` for unknown tokens)

        Raises:
            VerificationError: kind network, timeout, invalid-token or platform-error
        """
        if not purchase_token:
            raise VerificationError("Purchase token is required", kind=ErrorKind.INVALID_TOKEN)

        product_kind = self.config.resolve_product_kind(product_id)
        logger.info(
            "verification_started",
            product_id=product_id,
            product_kind=product_kind.value,
            token=purchase_token,
        )

        try:
            if product_kind == ProductKind.ONE_TIME:
                payload = await asyncio.wait_for(
                    self.client.get_product_purchase(product_id, purchase_token),
                    timeout=self.timeout_seconds,
                )
            else:
                payload = await asyncio.wait_for(
                    self.client.get_subscription_v2(purchase_token),
                    timeout=self.timeout_seconds,
                )
        except httpx.HTTPStatusError as e:
            if status_code_of(e) in (404, 410):
                logger.info("purchase_not_found", product_id=product_id, token=purchase_token)
                return self._not_found(product_id, purchase_token, product_kind)
            raise self._verification_error(e, product_id) from e
        except (asyncio.TimeoutError, httpx.HTTPError, GoogleAuthError, ValueError) as e:
            raise self._verification_error(e, product_id) from e

        try:
            if product_kind == ProductKind.ONE_TIME:
                result = self._from_product(
                    ProductPurchase.model_validate(payload), product_id, purchase_token
                )
            else:
                result = self._from_subscription(
                    SubscriptionPurchaseV2.model_validate(payload), product_id, purchase_token
                )
        except ValidationError as e:
            raise VerificationError(
                f"Unexpected purchase payload for {product_id}: {e}",
                kind=ErrorKind.PLATFORM_ERROR,
                cause=e,
            ) from e

        logger.info(
            "verification_completed",
            product_id=result.product_id,
            status=result.status.value,
            platform_state=result.platform_state,
            is_entitled=result.is_entitled,
            expires_at=result.expires_at.isoformat() if result.expires_at else None,
        )
        return result

    def _verification_error(self, error: Exception, product_id: str) -> VerificationError:
        kind = classify_error(error)
        if kind not in VERIFICATION_ERROR_KINDS:
            kind = ErrorKind.PLATFORM_ERROR
        message = technical_message(error) or type(error).__name__
        logger.warning(
            "verification_failed",
            product_id=product_id,
            error_kind=kind.value,
            error=message,
            status_code=status_code_of(error),
            permission_denied=is_permission_error(error),
        )
        return VerificationError(
            f"Verification of {product_id} failed: {message}", kind=kind, cause=error
        )

    def _not_found(
        self, product_id: str, purchase_token: str, product_kind: ProductKind
    ) -> VerificationResult:
        return VerificationResult(
            status=VerificationStatus.NOT_FOUND,
            product_id=product_id,
            purchase_token=purchase_token,
            product_kind=product_kind,
            verified_at=self._clock(),
        )

    def _from_subscription(
        self,
        purchase: SubscriptionPurchaseV2,
        product_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        now = self._clock()
        line_item = purchase.latest_line_item()
        expires_at = _as_utc(line_item.expiryTime) if line_item else None
        # No dated line item means no paid period to grant
        expired = expires_at is None or expires_at <= now

        auto_renewing: Optional[bool] = None
        if line_item and line_item.autoRenewingPlan is not None:
            auto_renewing = line_item.autoRenewingPlan.autoRenewEnabled

        state = purchase.subscriptionState
        if state == SUBSCRIPTION_STATE_ACTIVE:
            status = VerificationStatus.EXPIRED if expired else VerificationStatus.ACTIVE
        elif state == SUBSCRIPTION_STATE_CANCELED:
            # Canceled subscriptions keep access until the paid period ends
            status = VerificationStatus.CANCELED if expired else VerificationStatus.ACTIVE
            auto_renewing = False
        elif state in _FIXED_SUBSCRIPTION_STATUSES:
            status = _FIXED_SUBSCRIPTION_STATUSES[state]
        else:
            logger.warning("unknown_subscription_state", product_id=product_id, state=state)
            raise VerificationError(
                f"Unrecognized subscription state {state!r} for {product_id}",
                kind=ErrorKind.PLATFORM_ERROR,
            )

        return VerificationResult(
            status=status,
            product_id=(line_item.productId if line_item and line_item.productId else product_id),
            purchase_token=purchase_token,
            product_kind=ProductKind.SUBSCRIPTION,
            expires_at=expires_at,
            auto_renewing=auto_renewing,
            order_id=purchase.latestOrderId,
            base_plan_id=(
                line_item.offerDetails.basePlanId
                if line_item and line_item.offerDetails
                else None
            ),
            acknowledged=purchase.is_acknowledged,
            platform_state=state,
            verified_at=now,
        )

    def _from_product(
        self,
        purchase: ProductPurchase,
        product_id: str,
        purchase_token: str,
    ) -> VerificationResult:
        try:
            status = _PRODUCT_STATUSES[PurchaseState(purchase.purchaseState)]
        except (ValueError, TypeError):
            logger.warning(
                "unknown_purchase_state", product_id=product_id, state=purchase.purchaseState
            )
            raise VerificationError(
                f"Unrecognized purchase state {purchase.purchaseState!r} for {product_id}",
                kind=ErrorKind.PLATFORM_ERROR,
            ) from None

        return VerificationResult(
            status=status,
            product_id=purchase.productId or product_id,
            purchase_token=purchase_token,
            product_kind=ProductKind.ONE_TIME,
            order_id=purchase.orderId,
            acknowledged=purchase.is_acknowledged,
            platform_state=f"PURCHASE_STATE_{PurchaseState(purchase.purchaseState).name}",
            verified_at=self._clock(),
        )
