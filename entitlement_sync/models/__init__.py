"""Pydantic models for entitlements, billing payloads, events and the HTTP API."""

# Entitlement record
from .entitlement import (
    EntitlementSource,
    EntitlementType,
    EntitlementRecord,
    EntitlementPatch,
    EntitlementSnapshot,
)

# Verification
from .verification import (
    VerificationStatus,
    ProductKind,
    VerificationResult,
    VerificationAttempt,
)

# Billing platform payloads (Android Publisher API v3)
from .billing import (
    PurchaseState,
    AcknowledgementState,
    SubscriptionPurchaseV2,
    ProductPurchase,
)

# RTDN events
from .events import (
    NotificationType,
    DeveloperNotification,
    PubSubPushEnvelope,
)

# Orchestrator outcomes
from .sync import (
    SyncState,
    SyncStatus,
    AcknowledgmentStatus,
    ClassifiedError,
    AcknowledgmentOutcome,
    SyncOutcome,
)

# Configuration
from .settings import (
    ProductDefinition,
    BillingSettings,
    StoreSettings,
    AuthSettings,
    WebhookSettings,
    SettingsConfig,
)

__all__ = [
    # Entitlement
    "EntitlementSource",
    "EntitlementType",
    "EntitlementRecord",
    "EntitlementPatch",
    "EntitlementSnapshot",
    # Verification
    "VerificationStatus",
    "ProductKind",
    "VerificationResult",
    "VerificationAttempt",
    # Billing
    "PurchaseState",
    "AcknowledgementState",
    "SubscriptionPurchaseV2",
    "ProductPurchase",
    # Events
    "NotificationType",
    "DeveloperNotification",
    "PubSubPushEnvelope",
    # Outcomes
    "SyncState",
    "SyncStatus",
    "AcknowledgmentStatus",
    "ClassifiedError",
    "AcknowledgmentOutcome",
    "SyncOutcome",
    # Configuration
    "ProductDefinition",
    "BillingSettings",
    "StoreSettings",
    "AuthSettings",
    "WebhookSettings",
    "SettingsConfig",
]
