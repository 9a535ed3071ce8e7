"""Configuration management - loads settings.yaml and environment overrides."""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from entitlement_sync.errors import ConfigurationError
from entitlement_sync.models import ProductDefinition, SettingsConfig
from entitlement_sync.models.settings import BillingSettings, StoreSettings
from entitlement_sync.models.verification import ProductKind


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Validated view of settings.yaml plus environment overrides.

    Exposes:
    - Product catalog (subscription vs one-time)
    - Billing API access and timeouts
    - Entitlement store backend
    - Client auth and webhook secrets
    """

    def __init__(self, config_path: Optional[str] = None):
        """Load and validate the settings file immediately.

        Args:
            config_path: Path to settings.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/settings.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[SettingsConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/settings.yaml")

    def _load_config(self) -> None:
        """Load settings.yaml, apply environment overrides and validate."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/settings.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")
        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self._config_path}")

        self._apply_env_overrides(raw_config)

        try:
            self._settings = SettingsConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @staticmethod
    def _apply_env_overrides(raw_config: dict[str, Any]) -> None:
        billing = raw_config.setdefault("billing", {}) or {}
        store = raw_config.setdefault("store", {}) or {}
        auth = raw_config.setdefault("auth", {}) or {}
        webhook = raw_config.setdefault("webhook", {}) or {}
        raw_config.update(billing=billing, store=store, auth=auth, webhook=webhook)

        if os.getenv("STORE_BACKEND"):
            store["backend"] = os.environ["STORE_BACKEND"].strip().lower()
        if os.getenv("BILLING_API_BASE_URL"):
            billing["api_base_url"] = os.environ["BILLING_API_BASE_URL"]
        if os.getenv("PLAY_SERVICE_ACCOUNT_FILE"):
            billing["service_account_file"] = os.environ["PLAY_SERVICE_ACCOUNT_FILE"]
        if os.getenv("RTDN_WEBHOOK_TOKEN"):
            webhook["auth_token"] = os.environ["RTDN_WEBHOOK_TOKEN"]
        auth_enabled = _env_flag("AUTH_ENABLED")
        if auth_enabled is not None:
            auth["enabled"] = auth_enabled

    @property
    def settings(self) -> SettingsConfig:
        """Get validated settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def package_name(self) -> str:
        return self.settings.package_name

    @property
    def billing(self) -> BillingSettings:
        return self.settings.billing

    @property
    def store(self) -> StoreSettings:
        return self.settings.store

    @property
    def auth_enabled(self) -> bool:
        return self.settings.auth.enabled

    @property
    def webhook_auth_token(self) -> Optional[str]:
        return self.settings.webhook.auth_token

    @property
    def service_account_json(self) -> Optional[str]:
        """Inline service-account key, only ever read from the environment."""
        return os.getenv("PLAY_SERVICE_ACCOUNT_JSON")

    def get_product_by_id(self, product_id: str) -> Optional[ProductDefinition]:
        """Look up a catalog entry.

        Args:
            product_id: Billing product ID (e.g., "showseek_yearly_sub")

        Returns:
            The catalog entry, or None for products not listed
        """
        for product in self.settings.products:
            if product.id == product_id:
                return product
        return None

    def resolve_product_kind(self, product_id: str) -> ProductKind:
        """Subscription or one-time product.

        Unknown products are treated as subscriptions, except the legacy
        lifetime product.
        """
        product = self.get_product_by_id(product_id)
        if product is not None:
            return product.type
        if product_id == self.settings.legacy_lifetime_product_id:
            return ProductKind.ONE_TIME
        return ProductKind.SUBSCRIPTION

    def reload(self) -> None:
        """Re-read the settings file; environment overrides are applied again."""
        self._load_config()


_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Process-wide Config, created on first use.

    Args:
        config_path: Optional path to configuration file (only used on first call)
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Re-read settings.yaml into the process-wide Config."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (useful for testing)."""
    global _config_instance
    _config_instance = None
