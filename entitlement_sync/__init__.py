"""Premium entitlement reconciliation between Google Play Billing and the profile store."""

__version__ = "0.1.0"
