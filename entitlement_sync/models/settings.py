"""Settings models loaded from settings.yaml."""

from typing import Optional

from pydantic import BaseModel, Field

from .verification import ProductKind


class ProductDefinition(BaseModel):
    """Premium product known to the service."""

    id: str = Field(..., description="Billing product ID")
    type: ProductKind = Field(..., description="Product type: 'subs' or 'inapp'")
    title: str = Field(default="", description="Human-readable title")
    plan: Optional[str] = Field(None, description="Plan name, e.g. monthly or yearly")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "showseek_yearly_sub",
                "type": "subs",
                "title": "Premium Yearly",
                "plan": "yearly",
            }
        }


class BillingSettings(BaseModel):
    """Android Publisher API access."""

    api_base_url: str = Field(
        default="https://androidpublisher.googleapis.com",
        description="Base URL; point at the IAP emulator for local runs",
    )
    verification_timeout_seconds: float = Field(default=10.0, gt=0)
    acknowledgment_timeout_seconds: float = Field(default=10.0, gt=0)
    service_account_file: Optional[str] = Field(None, description="Service-account JSON key path")
    require_credentials: bool = Field(
        default=True, description="Refuse to call the API without credentials"
    )


class StoreSettings(BaseModel):
    backend: str = Field(default="memory", pattern="^(memory|firestore)$")
    collection: str = Field(default="entitlements", description="Firestore collection name")


class AuthSettings(BaseModel):
    enabled: bool = Field(default=True, description="Verify Firebase ID tokens on client routes")


class WebhookSettings(BaseModel):
    auth_token: Optional[str] = Field(None, description="Shared secret for Pub/Sub push deliveries")


class SettingsConfig(BaseModel):
    """Complete settings.yaml configuration."""

    package_name: str = Field(..., description="Android package name")
    legacy_lifetime_product_id: Optional[str] = Field(
        None, description="One-time product sold before subscriptions existed"
    )
    products: list[ProductDefinition] = Field(default_factory=list)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
