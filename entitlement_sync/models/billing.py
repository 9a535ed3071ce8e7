"""Billing platform payload models (Android Publisher API v3).

Only the fields the verifier reads are declared; everything else in the
remote payload is ignored.
"""

from datetime import datetime
from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, Field


class PurchaseState(IntEnum):
    """Purchase state for one-time products."""

    PURCHASED = 0
    CANCELED = 1
    PENDING = 2


class AcknowledgementState(IntEnum):
    """Acknowledgement state for one-time products."""

    NOT_ACKNOWLEDGED = 0
    ACKNOWLEDGED = 1


# subscriptionsv2 reports states as strings
SUBSCRIPTION_STATE_UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"
SUBSCRIPTION_STATE_PENDING = "SUBSCRIPTION_STATE_PENDING"
SUBSCRIPTION_STATE_ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"
SUBSCRIPTION_STATE_PAUSED = "SUBSCRIPTION_STATE_PAUSED"
SUBSCRIPTION_STATE_IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"
SUBSCRIPTION_STATE_ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"
SUBSCRIPTION_STATE_CANCELED = "SUBSCRIPTION_STATE_CANCELED"
SUBSCRIPTION_STATE_EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"
SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"

ACKNOWLEDGEMENT_STATE_PENDING = "ACKNOWLEDGEMENT_STATE_PENDING"
ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"


class AutoRenewingPlan(BaseModel):
    autoRenewEnabled: Optional[bool] = None


class OfferDetails(BaseModel):
    basePlanId: Optional[str] = None
    offerId: Optional[str] = None


class SubscriptionLineItem(BaseModel):
    """One product entry within a subscriptionsv2 purchase."""

    productId: Optional[str] = None
    expiryTime: Optional[datetime] = Field(None, description="RFC 3339 expiry timestamp")
    autoRenewingPlan: Optional[AutoRenewingPlan] = None
    offerDetails: Optional[OfferDetails] = None


class ExternalAccountIdentifiers(BaseModel):
    obfuscatedExternalAccountId: Optional[str] = None
    obfuscatedExternalProfileId: Optional[str] = None


class SubscriptionPurchaseV2(BaseModel):
    """Response for GET .../purchases/subscriptionsv2/tokens/{token}"""

    kind: str = Field(default="androidpublisher#subscriptionPurchaseV2")
    regionCode: Optional[str] = None
    startTime: Optional[datetime] = None
    subscriptionState: str = Field(default=SUBSCRIPTION_STATE_UNSPECIFIED)
    latestOrderId: Optional[str] = None
    linkedPurchaseToken: Optional[str] = None
    acknowledgementState: str = Field(default=ACKNOWLEDGEMENT_STATE_PENDING)
    lineItems: list[SubscriptionLineItem] = Field(default_factory=list)
    externalAccountIdentifiers: Optional[ExternalAccountIdentifiers] = None

    def latest_line_item(self) -> Optional[SubscriptionLineItem]:
        """Line item with the furthest expiry; items without expiry are ignored."""
        dated = [item for item in self.lineItems if item.expiryTime is not None]
        if not dated:
            return None
        return max(dated, key=lambda item: item.expiryTime)

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledgementState == ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "androidpublisher#subscriptionPurchaseV2",
                "startTime": "2026-01-01T00:00:00Z",
                "subscriptionState": SUBSCRIPTION_STATE_ACTIVE,
                "latestOrderId": "GPA.1234-5678-9012-34567",
                "acknowledgementState": ACKNOWLEDGEMENT_STATE_PENDING,
                "lineItems": [
                    {
                        "productId": "showseek_yearly_sub",
                        "expiryTime": "2027-01-01T00:00:00Z",
                        "autoRenewingPlan": {"autoRenewEnabled": True},
                        "offerDetails": {"basePlanId": "yearly"},
                    }
                ],
            }
        }


class ProductPurchase(BaseModel):
    """Response for GET .../purchases/products/{productId}/tokens/{token}"""

    kind: str = Field(default="androidpublisher#productPurchase")
    purchaseTimeMillis: Optional[str] = None
    purchaseState: Optional[int] = Field(None, description="0=purchased, 1=canceled, 2=pending")
    consumptionState: Optional[int] = None
    acknowledgementState: int = Field(default=AcknowledgementState.NOT_ACKNOWLEDGED)
    orderId: Optional[str] = None
    productId: Optional[str] = None
    purchaseToken: Optional[str] = None
    obfuscatedExternalAccountId: Optional[str] = None
    regionCode: Optional[str] = None

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledgementState == AcknowledgementState.ACKNOWLEDGED

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "androidpublisher#productPurchase",
                "purchaseTimeMillis": "1700000000000",
                "purchaseState": 0,
                "consumptionState": 0,
                "orderId": "GPA.9876-5432-1098-76543",
                "acknowledgementState": 0,
                "productId": "premium_unlock",
            }
        }
