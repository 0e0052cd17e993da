"""
FetchOrders capability - שליפת הזמנות מהפלטפורמה כגיבוי ל-webhooks שלא הגיעו.

המימוש היחיד הוא ה-API המובנה של הפלטפורמה. הזמנות שנשלפות נרשמות
כאירועי פלטפורמה רגילים ועוברות באותו מסלול של webhook.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from app.domain.services.merchant_registry import TenantProfile
from app.domain.services.outbound.ordering_platform import CredentialsLoader, OrderingPlatformClient


class OrderSource(Protocol):
    async def fetch_orders(
        self,
        tenant: TenantProfile,
        since: datetime,
        *,
        reload: CredentialsLoader | None = None,
    ) -> list[dict[str, Any]]:
        ...


class PlatformApiOrderSource:
    """
    Orders from the ordering platform's REST API.

    Polling runs outside the Retry Executor, so transient failures are
    retried here up to ``max_attempts``.
    """

    def __init__(self, client: OrderingPlatformClient, *, max_attempts: int | None = None):
        self.client = client
        self.max_attempts = max_attempts

    async def fetch_orders(
        self,
        tenant: TenantProfile,
        since: datetime,
        *,
        reload: CredentialsLoader | None = None,
    ) -> list[dict[str, Any]]:
        return await self.client.list_orders(
            tenant.credentials,
            since,
            reload=reload,
            max_attempts=self.max_attempts,
        )
