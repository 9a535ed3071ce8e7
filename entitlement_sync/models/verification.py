"""Verification results and the transient verification attempt."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .entitlement import EntitlementType


class VerificationStatus(str, Enum):
    """Entitlement-relevant classification of a billing platform payload."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace-period"
    ON_HOLD = "on-hold"
    PAUSED = "paused"
    PENDING = "pending"
    EXPIRED = "expired"
    CANCELED = "canceled"
    NOT_FOUND = "not-found"  # Token unknown to the platform


ENTITLED_STATUSES = frozenset({VerificationStatus.ACTIVE, VerificationStatus.GRACE_PERIOD})


class ProductKind(str, Enum):
    """Billing product kind; decides which platform endpoints are used."""

    SUBSCRIPTION = "subs"
    ONE_TIME = "inapp"


class VerificationResult(BaseModel):
    """Authoritative purchase state returned by PurchaseVerifier."""

    status: VerificationStatus
    product_id: str
    purchase_token: str
    product_kind: ProductKind = ProductKind.SUBSCRIPTION
    expires_at: Optional[datetime] = None
    auto_renewing: Optional[bool] = None
    order_id: Optional[str] = None
    base_plan_id: Optional[str] = None
    acknowledged: bool = Field(default=False, description="Platform already has the acknowledgment")
    platform_state: Optional[str] = Field(None, description="Raw state reported by the platform")
    verified_at: datetime

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def entitlement_type(self) -> EntitlementType:
        if not self.is_entitled:
            return EntitlementType.NONE
        if self.product_kind == ProductKind.ONE_TIME:
            return EntitlementType.LIFETIME
        return EntitlementType.SUBSCRIPTION


class VerificationAttempt(BaseModel):
    """Inputs of one orchestrator invocation; never persisted."""

    user_id: str
    product_id: str
    purchase_token: Optional[str] = None
    existing_is_premium: bool = False
    allow_downgrade: bool = False
    verified_result: Optional[VerificationResult] = None

    @property
    def is_token_less(self) -> bool:
        return not self.purchase_token
