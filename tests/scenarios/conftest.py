"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שליחת webhooks של הפלטפורמה ושל השליחויות דרך ה-API
- פונקציות אימות DB (הזמנה, משלוח, אירועים ביומן)
"""
import json
from typing import Any

import httpx
from sqlalchemy import func, select

from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.order import Order, OrderStatus
from app.db.models.webhook_event import EventSource, WebhookEvent, WebhookEventStatus
from app.domain.services.webhook_security import compute_signature

from tests.conftest import COURIER_SECRET, STORE_ID


# ============================================================================
# שליחת webhooks
# ============================================================================

async def send_order_webhook(
    client: httpx.AsyncClient,
    payload: dict[str, Any],
    *,
    secret: str | None = None,
) -> httpx.Response:
    """POST ל-webhook הפלטפורמה; עם secret — חתימת HMAC על ה-body"""
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Webhook-Signature"] = compute_signature(body, secret)
    return await client.post("/api/webhooks/orders", content=body, headers=headers)


async def send_courier_webhook(
    client: httpx.AsyncClient,
    payload: dict[str, Any],
    *,
    secret: str = COURIER_SECRET,
) -> httpx.Response:
    return await client.post(
        "/api/webhooks/courier",
        json=payload,
        headers={"Authorization": f"Bearer {secret}"},
    )


# ============================================================================
# שאילתות ואימות DB
# ============================================================================

async def get_order(session_factory, platform_order_id: str, store_id: str = STORE_ID) -> Order | None:
    async with session_factory() as db:
        result = await db.execute(
            select(Order).where(Order.store_id == store_id, Order.platform_order_id == platform_order_id)
        )
        return result.scalar_one_or_none()


async def get_delivery(session_factory, external_delivery_id: str) -> Delivery | None:
    async with session_factory() as db:
        result = await db.execute(
            select(Delivery).where(Delivery.external_delivery_id == external_delivery_id)
        )
        return result.scalar_one_or_none()


async def count_orders(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(Order.id)))).scalar_one()


async def get_events(session_factory, source: EventSource | None = None) -> list[WebhookEvent]:
    async with session_factory() as db:
        query = select(WebhookEvent).order_by(WebhookEvent.created_at)
        if source is not None:
            query = query.where(WebhookEvent.source == source)
        return list((await db.execute(query)).scalars().all())


async def assert_order_status(session_factory, platform_order_id: str, expected: OrderStatus) -> Order:
    order = await get_order(session_factory, platform_order_id)
    assert order is not None, f"order {platform_order_id} not found"
    assert order.status == expected, f"expected {expected.value}, got {order.status.value}"
    return order


async def assert_delivery_status(session_factory, external_delivery_id: str, expected: DeliveryStatus) -> Delivery:
    delivery = await get_delivery(session_factory, external_delivery_id)
    assert delivery is not None, f"delivery {external_delivery_id} not found"
    assert delivery.status == expected, f"expected {expected.value}, got {delivery.status.value}"
    return delivery


async def assert_event_statuses(session_factory, source: EventSource, *expected: WebhookEventStatus) -> None:
    events = await get_events(session_factory, source)
    assert [e.status for e in events] == list(expected)
