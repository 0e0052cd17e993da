"""
תרחיש A — הזמנה חדשה עד dispatch מתוזמן

מכסה:
- webhook order.created → Order בסטטוס pending + Delivery עם dispatch_due_at
- dispatch_due_at = promised_time − lead buffer (30 דקות)
- הסריקה יורה את המשלוח כשהשעון מגיע ל-dispatch_due_at, ולא לפני
- הזמנה בלי promised_time יוצאת מיד
- הזמנת pickup לא יוצרת Delivery
"""
import json
from datetime import timedelta

import pytest

from app.db.models.delivery import DeliveryStatus
from app.db.models.order import FulfillmentType, OrderStatus
from app.db.models.webhook_event import EventSource, WebhookEventStatus

from tests.conftest import START_TIME, platform_payload
from tests.scenarios.conftest import (
    assert_delivery_status,
    assert_event_statuses,
    assert_order_status,
    get_delivery,
    get_events,
    send_order_webhook,
)


@pytest.mark.scenario
class TestOrderToDispatch:
    """מחזור הזמנה עד יציאת בקשת המשלוח"""

    async def test_scheduled_dispatch(
        self, test_client, merchant, dispatch_engine, session_factory, clock, courier_api
    ):
        """promised_time = T+60 → dispatch_due_at = T+30, והבקשה יוצאת רק אז"""
        promised = START_TIME + timedelta(minutes=60)

        # --- שלב 1: webhook ---
        response = await send_order_webhook(test_client, platform_payload("O1", promised_time=promised))

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "accepted"
        assert data["event_ids"] == [data["event_id"]]

        order = await assert_order_status(session_factory, "O1", OrderStatus.PENDING)
        assert order.fulfillment_type == FulfillmentType.DELIVERY
        assert order.promised_time == promised
        delivery = await assert_delivery_status(session_factory, "S1-O1", DeliveryStatus.PENDING)
        assert delivery.dispatch_due_at == START_TIME + timedelta(minutes=30)
        assert delivery.dispatched_at is None
        await assert_event_statuses(session_factory, EventSource.ORDERING_PLATFORM, WebhookEventStatus.SUCCEEDED)

        # --- שלב 2: לפני הזמן לא יוצא כלום ---
        clock.advance(29 * 60)
        assert await dispatch_engine.scheduler.scan_once() == 0
        assert courier_api.calls("POST", "/deliveries") == []

        # --- שלב 3: הגיע הזמן ---
        clock.advance(60)
        assert await dispatch_engine.scheduler.scan_once() == 1
        await dispatch_engine.scheduler.wait_idle()

        posts = courier_api.calls("POST", "/deliveries")
        assert len(posts) == 1
        body = json.loads(posts[0].content)
        assert body["external_delivery_id"] == "S1-O1"
        assert body["dropoff_time"] == promised.isoformat() + "Z"

        delivery = await get_delivery(session_factory, "S1-O1")
        assert delivery.dispatched_at == START_TIME + timedelta(minutes=30)
        assert delivery.courier_delivery_id == "dd-S1-O1"
        assert delivery.tracking_url.endswith("S1-O1")
        await assert_event_statuses(session_factory, EventSource.DISPATCH_SCHEDULER, WebhookEventStatus.SUCCEEDED)

        # --- שלב 4: סריקה נוספת לא שולחת שוב ---
        clock.advance(120)
        assert await dispatch_engine.scheduler.scan_once() == 0
        assert len(courier_api.calls("POST", "/deliveries")) == 1

    async def test_order_without_promised_time_dispatches_now(
        self, test_client, merchant, dispatch_engine, session_factory, courier_api
    ):
        response = await send_order_webhook(test_client, platform_payload("O2"))
        await dispatch_engine.scheduler.wait_idle()

        assert response.status_code == 202
        delivery = await get_delivery(session_factory, "S1-O2")
        assert delivery.dispatched_at is not None
        assert len(courier_api.calls("POST", "/deliveries")) == 1

    async def test_pickup_order_has_no_delivery(self, test_client, merchant, session_factory, courier_api):
        await send_order_webhook(test_client, platform_payload("O3", fulfillment="pickup"))

        await assert_order_status(session_factory, "O3", OrderStatus.PENDING)
        assert await get_delivery(session_factory, "S1-O3") is None
        assert courier_api.requests == []

    async def test_auto_dispatch_disabled_waits_for_operator(
        self, test_client, merchant_factory, dispatch_engine, session_factory, clock, courier_api
    ):
        """tenant עם auto_dispatch כבוי — Delivery בלי dispatch_due_at, dispatch ידני בלבד"""
        await merchant_factory(auto_dispatch_enabled=False)

        await send_order_webhook(test_client, platform_payload("O4"))
        clock.advance(3600)
        await dispatch_engine.scheduler.scan_once()
        await dispatch_engine.scheduler.wait_idle()

        delivery = await get_delivery(session_factory, "S1-O4")
        assert delivery.dispatch_due_at is None
        assert courier_api.calls("POST", "/deliveries") == []

        outcome = await dispatch_engine.dispatch_now("S1", "O4")

        assert outcome.succeeded
        assert (await get_delivery(session_factory, "S1-O4")).dispatched_at is not None

    async def test_batch_webhook_logs_each_order(self, test_client, merchant, session_factory):
        body = {
            "store_id": "S1",
            "event_type": "order.created",
            "orders": [
                platform_payload("O5", fulfillment="pickup")["order"],
                platform_payload("O6", fulfillment="pickup")["order"],
            ],
        }

        response = await send_order_webhook(test_client, body)

        assert response.status_code == 202
        assert len(response.json()["event_ids"]) == 2
        assert len(await get_events(session_factory, EventSource.ORDERING_PLATFORM)) == 2
        await assert_order_status(session_factory, "O5", OrderStatus.PENDING)
        await assert_order_status(session_factory, "O6", OrderStatus.PENDING)
