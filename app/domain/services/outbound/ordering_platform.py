"""
Ordering platform (GloriaFood) API client.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable

from app.core.exceptions import UpstreamAuthenticationError
from app.core.logging import get_logger
from app.domain.services.merchant_registry import MerchantCredentials
from app.domain.services.outbound.base import RateLimitedClient

logger = get_logger(__name__)

SERVICE_NAME = "ordering_platform"
API_VERSION = "2"

CredentialsLoader = Callable[[], Awaitable[MerchantCredentials]]


class TenantKeyAuth:
    """
    Restaurant API key auth.

    ``reload`` re-reads the tenant's credentials from the registry so a
    rotated key is picked up on a 401.
    """

    def __init__(self, credentials: MerchantCredentials, reload: CredentialsLoader | None = None):
        self._credentials = credentials
        self._reload = reload

    def headers(self) -> dict[str, str]:
        if not self._credentials.api_key:
            raise UpstreamAuthenticationError(SERVICE_NAME, "Tenant has no API key configured")
        return {
            "Authorization": self._credentials.api_key,
            "Glf-Api-Version": API_VERSION,
        }

    async def refresh(self) -> None:
        if self._reload is not None:
            self._credentials = await self._reload()


class OrderingPlatformClient:
    """Read and update orders on the ordering platform"""

    def __init__(self, http: RateLimitedClient):
        self.http = http

    @staticmethod
    def _url(credentials: MerchantCredentials, path: str) -> str:
        # api_url של ה-tenant גובר על כתובת ברירת המחדל
        if credentials.api_url:
            return f"{credentials.api_url.rstrip('/')}{path}"
        return path

    async def get_order(
        self,
        credentials: MerchantCredentials,
        order_id: str,
        *,
        reload: CredentialsLoader | None = None,
    ) -> dict[str, Any] | None:
        """Order detail, or None when the platform does not know the order"""
        response = await self.http.request(
            "GET",
            self._url(credentials, f"/orders/{order_id}"),
            operation="get_order",
            auth=TenantKeyAuth(credentials, reload),
            allow_status=(404,),
        )
        if response.status_code == 404:
            return None
        data = response.json()
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            return data["order"]
        return data

    async def update_order_status(
        self,
        credentials: MerchantCredentials,
        order_id: str,
        status: str,
        *,
        reload: CredentialsLoader | None = None,
    ) -> None:
        await self.http.request(
            "POST",
            self._url(credentials, f"/orders/{order_id}/status"),
            operation="update_order_status",
            auth=TenantKeyAuth(credentials, reload),
            json={"status": status},
        )
        logger.info(
            "Order status pushed to ordering platform",
            extra_data={"order_id": order_id, "status": status},
        )

    async def list_orders(
        self,
        credentials: MerchantCredentials,
        since: datetime,
        *,
        reload: CredentialsLoader | None = None,
        max_attempts: int | None = None,
    ) -> list[dict[str, Any]]:
        """Orders updated since ``since`` (naive UTC)"""
        response = await self.http.request(
            "GET",
            self._url(credentials, "/orders"),
            operation="list_orders",
            auth=TenantKeyAuth(credentials, reload),
            max_attempts=max_attempts,
            params={"updated_since": since.isoformat() + "Z"},
        )
        data = response.json()
        if isinstance(data, dict):
            data = data.get("orders") or []
        return [order for order in data if isinstance(order, dict)]
