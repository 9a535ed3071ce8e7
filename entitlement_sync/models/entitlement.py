"""Entitlement record - the canonical premium flag for one user.

Documents are stored with camelCase field names; the Python side uses
snake_case attributes with aliases.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EntitlementSource(str, Enum):
    """Provenance of the last write to an entitlement record."""

    STORE_VERIFIED = "store-verified"  # Confirmed by the billing platform
    MANUAL_GRANT = "manual-grant"  # Granted by an operator
    UNKNOWN = "unknown"  # Written without platform confirmation


class EntitlementType(str, Enum):
    """Kind of premium access a record represents."""

    LIFETIME = "lifetime"
    SUBSCRIPTION = "subscription"
    NONE = "none"


class EntitlementRecord(BaseModel):
    """Stored entitlement for one user.

    ``is_premium`` is the only field read by the rest of the application.
    ``acknowledged_tokens`` is append-only.
    """

    user_id: str = Field(..., alias="userId", description="Stable user identifier")
    is_premium: bool = Field(default=False, alias="isPremium", description="Premium access flag")
    source: EntitlementSource = Field(
        default=EntitlementSource.UNKNOWN, description="Provenance of the last write"
    )
    product_id: Optional[str] = Field(None, alias="productId", description="Last-seen product ID")
    purchase_token: Optional[str] = Field(
        None, alias="purchaseToken", description="Last-seen purchase token"
    )
    last_verified_at: Optional[datetime] = Field(
        None, alias="lastVerifiedAt", description="Last successful verification call"
    )
    acknowledged_tokens: list[str] = Field(
        default_factory=list,
        alias="acknowledgedTokens",
        description="Purchase tokens already acknowledged with the billing platform",
    )

    # Verification metadata
    entitlement_type: EntitlementType = Field(
        default=EntitlementType.NONE, alias="entitlementType", description="Kind of access"
    )
    status: Optional[str] = Field(None, description="Status reported by the last verification")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt", description="Current expiry")
    auto_renewing: Optional[bool] = Field(None, alias="autoRenewing", description="Auto-renew flag")
    order_id: Optional[str] = Field(None, alias="orderId", description="Latest order ID")
    base_plan_id: Optional[str] = Field(None, alias="basePlanId", description="Subscription base plan")

    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    def has_acknowledged(self, purchase_token: str) -> bool:
        return purchase_token in self.acknowledged_tokens

    def to_document(self) -> dict[str, Any]:
        """Serialize to a document with camelCase keys and plain enum values."""
        document = self.model_dump(by_alias=True)
        for key, value in document.items():
            if isinstance(value, Enum):
                document[key] = value.value
        return document

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "EntitlementRecord":
        return cls.model_validate(data)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "userId": "user-123",
                "isPremium": True,
                "source": "store-verified",
                "productId": "showseek_yearly_sub",
                "purchaseToken": "opaque-token-abc...",
                "lastVerifiedAt": "2026-10-19T12:00:00Z",
                "acknowledgedTokens": ["opaque-token-abc..."],
                "entitlementType": "subscription",
                "status": "active",
                "expiresAt": "2027-10-19T12:00:00Z",
                "autoRenewing": True,
            }
        }


class EntitlementPatch(BaseModel):
    """Fields to change on a write.

    ``source`` is mandatory so every write is attributable. Unset optional
    fields are left untouched.
    """

    is_premium: bool
    source: EntitlementSource
    product_id: Optional[str] = None
    purchase_token: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    entitlement_type: Optional[EntitlementType] = None
    status: Optional[str] = None
    expires_at: Optional[datetime] = None
    auto_renewing: Optional[bool] = None
    order_id: Optional[str] = None
    base_plan_id: Optional[str] = None

    def changed_fields(self) -> dict[str, Any]:
        """Fields explicitly set on this patch, keyed by attribute name."""
        return self.model_dump(exclude_unset=True)

    def apply_to(self, record: EntitlementRecord, now: datetime) -> EntitlementRecord:
        """Return a copy of ``record`` with this patch applied."""
        update = self.changed_fields()
        update["updated_at"] = now
        return record.model_copy(update=update)


class EntitlementSnapshot(BaseModel):
    """A store read: the record (if any) plus its version token."""

    user_id: str
    record: Optional[EntitlementRecord] = None
    version: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.record is not None

    @property
    def is_premium(self) -> bool:
        return self.record is not None and self.record.is_premium
