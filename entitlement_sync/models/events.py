"""Real-time Developer Notification (RTDN) models.

Google publishes RTDNs as camelCase JSON inside a Pub/Sub message; the local
IAP emulator publishes the same schema in snake_case. Both are accepted.
"""

import base64
import json
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class NotificationType(IntEnum):
    """Subscription notification types matching Google Play values."""

    SUBSCRIPTION_RECOVERED = 1
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12
    SUBSCRIPTION_EXPIRED = 13
    SUBSCRIPTION_PENDING_PURCHASE_CANCELED = 20


class OneTimeProductNotificationType(IntEnum):
    ONE_TIME_PRODUCT_PURCHASED = 1
    ONE_TIME_PRODUCT_CANCELED = 2


# Notifications in which the platform itself reports loss of access
DOWNGRADE_NOTIFICATION_TYPES = frozenset(
    {
        NotificationType.SUBSCRIPTION_ON_HOLD,
        NotificationType.SUBSCRIPTION_PAUSED,
        NotificationType.SUBSCRIPTION_REVOKED,
        NotificationType.SUBSCRIPTION_EXPIRED,
        NotificationType.SUBSCRIPTION_PENDING_PURCHASE_CANCELED,
    }
)


class _NotificationModel(BaseModel):
    class Config:
        populate_by_name = True


class SubscriptionNotification(_NotificationModel):
    """Subscription payload within DeveloperNotification."""

    version: str = Field(default="1.0")
    notification_type: int = Field(..., alias="notificationType")
    purchase_token: str = Field(..., alias="purchaseToken")
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")


class OneTimeProductNotification(_NotificationModel):
    """One-time product payload within DeveloperNotification."""

    version: str = Field(default="1.0")
    notification_type: int = Field(..., alias="notificationType")
    purchase_token: str = Field(..., alias="purchaseToken")
    sku: str


class VoidedPurchaseNotification(_NotificationModel):
    """Refund/chargeback payload within DeveloperNotification."""

    purchase_token: str = Field(..., alias="purchaseToken")
    order_id: Optional[str] = Field(None, alias="orderId")
    product_type: Optional[int] = Field(None, alias="productType")
    refund_type: Optional[int] = Field(None, alias="refundType")


class TestNotification(_NotificationModel):
    version: str = Field(default="1.0")


class DeveloperNotification(_NotificationModel):
    """Root RTDN message. Only one payload is populated per notification."""

    version: str = Field(default="1.0")
    package_name: str = Field(..., alias="packageName")
    event_time_millis: int = Field(..., alias="eventTimeMillis")

    subscription_notification: Optional[SubscriptionNotification] = Field(
        None, alias="subscriptionNotification"
    )
    one_time_product_notification: Optional[OneTimeProductNotification] = Field(
        None, alias="oneTimeProductNotification"
    )
    voided_purchase_notification: Optional[VoidedPurchaseNotification] = Field(
        None, alias="voidedPurchaseNotification"
    )
    test_notification: Optional[TestNotification] = Field(None, alias="testNotification")

    @property
    def purchase_token(self) -> Optional[str]:
        for payload in (
            self.subscription_notification,
            self.one_time_product_notification,
            self.voided_purchase_notification,
        ):
            if payload is not None:
                return payload.purchase_token
        return None

    @property
    def product_id(self) -> Optional[str]:
        if self.subscription_notification is not None:
            return self.subscription_notification.subscription_id
        if self.one_time_product_notification is not None:
            return self.one_time_product_notification.sku
        return None

    @property
    def carries_downgrade_intent(self) -> bool:
        """Whether the platform reports that access has ended."""
        if self.voided_purchase_notification is not None:
            return True
        if self.subscription_notification is not None:
            return self.subscription_notification.notification_type in DOWNGRADE_NOTIFICATION_TYPES
        if self.one_time_product_notification is not None:
            return (
                self.one_time_product_notification.notification_type
                == OneTimeProductNotificationType.ONE_TIME_PRODUCT_CANCELED
            )
        return False

    @property
    def kind(self) -> str:
        if self.subscription_notification is not None:
            return "subscription"
        if self.one_time_product_notification is not None:
            return "one_time_product"
        if self.voided_purchase_notification is not None:
            return "voided_purchase"
        if self.test_notification is not None:
            return "test"
        return "unknown"


class PubSubMessage(_NotificationModel):
    data: str = Field(..., description="Base64-encoded DeveloperNotification JSON")
    message_id: Optional[str] = Field(None, alias="messageId")
    publish_time: Optional[str] = Field(None, alias="publishTime")
    attributes: dict[str, Any] = Field(default_factory=dict)


class PubSubPushEnvelope(_NotificationModel):
    """Body of a Pub/Sub push delivery."""

    message: PubSubMessage
    subscription: Optional[str] = None

    def decode_notification(self) -> DeveloperNotification:
        """Decode the base64 payload.

        Raises:
            ValueError: If the payload is not valid base64 JSON
            pydantic.ValidationError: If the JSON is not a DeveloperNotification
        """
        try:
            raw = base64.b64decode(self.message.data, validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ValueError(f"Undecodable Pub/Sub message data: {e}") from e
        return DeveloperNotification.model_validate(payload)
