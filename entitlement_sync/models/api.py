"""HTTP request and response models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .sync import ClassifiedError


class SyncRequest(BaseModel):
    """Client-triggered entitlement re-sync."""

    userId: str = Field(..., description="User whose entitlement is reconciled")
    productId: str = Field(..., description="Billing product ID")
    purchaseToken: Optional[str] = Field(None, description="Purchase token, if the client has one")
    allowDowngrade: bool = Field(default=False, description="Explicit intent to clear premium")

    class Config:
        json_schema_extra = {
            "example": {
                "userId": "user-123",
                "productId": "showseek_yearly_sub",
                "purchaseToken": "opaque-token-abc...",
                "allowDowngrade": False,
            }
        }


class AcknowledgmentView(BaseModel):
    status: str
    error: Optional[ClassifiedError] = None


class SyncResponse(BaseModel):
    """Entitlement snapshot after a sync."""

    userId: str = Field(..., description="User identifier")
    status: str = Field(..., description="synced, guard-blocked or unchanged")
    isPremium: bool = Field(..., description="Premium flag after the sync")
    guardBlocked: bool = Field(..., description="Whether a downgrade was refused")
    source: Optional[str] = Field(None, description="Provenance of the stored value")
    entitlementType: Optional[str] = Field(None, description="lifetime, subscription or none")
    productId: Optional[str] = None
    verificationStatus: Optional[str] = Field(None, description="Status reported by the platform")
    expiresAt: Optional[datetime] = None
    lastVerifiedAt: Optional[datetime] = None
    acknowledgment: Optional[AcknowledgmentView] = None

    class Config:
        json_schema_extra = {
            "example": {
                "userId": "user-123",
                "status": "synced",
                "isPremium": True,
                "guardBlocked": False,
                "source": "store-verified",
                "entitlementType": "subscription",
                "productId": "showseek_yearly_sub",
                "verificationStatus": "active",
                "acknowledgment": {"status": "acknowledged"},
            }
        }


class EntitlementView(BaseModel):
    """Read-only view for downstream feature gates."""

    userId: str
    isPremium: bool


class WebhookResponse(BaseModel):
    ok: bool = True
    status: str = Field(..., description="processed, guard-blocked, ignored, unlinked or failed")
    userId: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body, shaped like Google API errors plus the classified kind."""

    error: dict = Field(..., description="code, message, status, kind, retryable")
