"""Play Billing client - async access to the Android Publisher API v3.

Implements the calls the service needs:
- GET  .../purchases/subscriptionsv2/tokens/{token}
- GET  .../purchases/products/{productId}/tokens/{token}
- POST .../purchases/subscriptions/{subscriptionId}/tokens/{token}:acknowledge
- POST .../purchases/products/{productId}/tokens/{token}:acknowledge

Non-2xx responses raise ``httpx.HTTPStatusError``; callers classify them.
"""

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from entitlement_sync.config import Config, get_config
from entitlement_sync.errors import ConfigurationError
from entitlement_sync.logging_config import get_logger

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]


def parse_service_account_json(raw: str) -> dict[str, Any]:
    """Parse and validate a service-account key.

    Keys pasted into environment variables often carry literal ``\\n``
    sequences in ``private_key``; those are turned back into newlines.

    Raises:
        ConfigurationError: If the JSON is malformed or lacks required fields
    """
    try:
        info = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Service account JSON is not valid JSON: {e}") from e

    if not isinstance(info, dict):
        raise ConfigurationError("Service account JSON must be an object")

    client_email = info.get("client_email")
    private_key = info.get("private_key")
    if not isinstance(client_email, str) or not client_email.strip():
        raise ConfigurationError("Service account JSON is missing client_email")
    if not isinstance(private_key, str) or not private_key.strip():
        raise ConfigurationError("Service account JSON is missing private_key")

    info["private_key"] = private_key.replace("\\n", "\n")
    return info


def load_credentials(config: Config) -> Optional[service_account.Credentials]:
    """Build service-account credentials from the environment or key file.

    ``PLAY_SERVICE_ACCOUNT_JSON`` wins over ``billing.service_account_file``.
    Without either, returns None when ``billing.require_credentials`` is off
    (e.g. against the local IAP emulator).

    Raises:
        ConfigurationError: If credentials are required but missing or invalid
    """
    raw = config.service_account_json
    source = "env"
    if not raw and config.billing.service_account_file:
        key_path = Path(config.billing.service_account_file)
        try:
            raw = key_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read service account file {key_path}: {e}") from e
        source = "file"

    if not raw:
        if config.billing.require_credentials:
            raise ConfigurationError(
                "Play service account credentials are not configured. Set "
                "PLAY_SERVICE_ACCOUNT_JSON or billing.service_account_file"
            )
        logger.warning("billing_credentials_missing", api_base_url=config.billing.api_base_url)
        return None

    info = parse_service_account_json(raw)
    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=ANDROID_PUBLISHER_SCOPES
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid service account key: {e}") from e

    logger.info("billing_credentials_loaded", source=source, client_email=info["client_email"])
    return credentials


class PlayBillingClient:
    """Thin async wrapper over the Android Publisher purchase endpoints."""

    def __init__(
        self,
        package_name: str,
        base_url: str = "https://androidpublisher.googleapis.com",
        credentials: Optional[service_account.Credentials] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            package_name: Android package name
            base_url: API root; point at the IAP emulator for local runs
            credentials: Service-account credentials, or None to send no
                         Authorization header
            timeout: Default per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.package_name = package_name
        self._credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PlayBillingClient":
        return cls(
            package_name=config.package_name,
            base_url=config.billing.api_base_url,
            credentials=load_credentials(config),
            timeout=config.billing.verification_timeout_seconds,
            transport=transport,
        )

    def _purchases_path(self) -> str:
        return f"/androidpublisher/v3/applications/{quote(self.package_name, safe='')}/purchases"

    async def _auth_headers(self) -> dict[str, str]:
        if self._credentials is None:
            return {}
        if not self._credentials.valid:
            # google-auth refresh is blocking
            await asyncio.to_thread(self._credentials.refresh, Request())
            logger.debug("billing_access_token_refreshed")
        return {"Authorization": f"Bearer {self._credentials.token}"}

    async def _request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = await self._auth_headers()
        kwargs: dict[str, Any] = {"headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if json_body is not None:
            kwargs["json"] = json_body

        response = await self._client.request(method, path, **kwargs)
        logger.debug(
            "billing_api_response",
            method=method,
            path=path.split("/tokens/")[0],
            status_code=response.status_code,
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def get_subscription_v2(
        self, purchase_token: str, timeout: Optional[float] = None
    ) -> dict[str, Any]:
        path = f"{self._purchases_path()}/subscriptionsv2/tokens/{quote(purchase_token, safe='')}"
        return await self._request("GET", path, timeout=timeout)

    async def get_product_purchase(
        self, product_id: str, purchase_token: str, timeout: Optional[float] = None
    ) -> dict[str, Any]:
        path = (
            f"{self._purchases_path()}/products/{quote(product_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}"
        )
        return await self._request("GET", path, timeout=timeout)

    async def acknowledge_subscription(
        self, subscription_id: str, purchase_token: str, timeout: Optional[float] = None
    ) -> None:
        path = (
            f"{self._purchases_path()}/subscriptions/{quote(subscription_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}:acknowledge"
        )
        await self._request("POST", path, timeout=timeout, json_body={})

    async def acknowledge_product(
        self, product_id: str, purchase_token: str, timeout: Optional[float] = None
    ) -> None:
        path = (
            f"{self._purchases_path()}/products/{quote(product_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}:acknowledge"
        )
        await self._request("POST", path, timeout=timeout, json_body={})

    async def aclose(self) -> None:
        await self._client.aclose()


# Global client instance
_client_instance: Optional[PlayBillingClient] = None
_client_lock = threading.Lock()


def get_billing_client() -> PlayBillingClient:
    """Get global billing client (singleton), built from configuration."""
    global _client_instance
    if _client_instance is None:
        with _client_lock:
            if _client_instance is None:
                _client_instance = PlayBillingClient.from_config(get_config())
    return _client_instance


def set_billing_client(client: Optional[PlayBillingClient]) -> None:
    global _client_instance
    with _client_lock:
        _client_instance = client


def reset_billing_client() -> None:
    """Drop the global client without closing it."""
    set_billing_client(None)
