"""
תרחיש: עדכוני הזמנה אחרי יצירת ה-Delivery

מכסה:
- promised_time חדש מזיז את dispatch_due_at ואת הטיימר
- הטיימר הישן מבוטל ולא יורה בזמן הישן
- הקדמה אל תוך ה-lead buffer יורה מיד
- משלוח שכבר יצא לא מתוזמן מחדש
- שינוי fulfillment_type: pickup → delivery יוצר Delivery, delivery → pickup מבטל
- עדכון בלי type לא משנה את סוג ההזמנה
"""
from datetime import timedelta

import pytest

from app.db.models.delivery import DeliveryStatus
from app.db.models.order import FulfillmentType, OrderStatus

from tests.conftest import START_TIME, platform_payload
from tests.scenarios.conftest import (
    assert_delivery_status,
    assert_order_status,
    get_delivery,
    send_order_webhook,
)


def _confirmed(promised_time=None, **kwargs):
    return platform_payload("O1", event_type="order.confirmed", promised_time=promised_time, **kwargs)


@pytest.mark.scenario
class TestPromisedTimeChange:
    """promised_time שמשתנה אחרי שה-Delivery כבר מתוזמן"""

    async def test_later_promised_time_moves_dispatch(
        self, test_client, merchant, dispatch_engine, session_factory, clock, courier_api
    ):
        """T+2h → T+4h: dispatch_due_at עובר ל-T+3h30, והטיימר הישן מבוטל"""
        scheduler = dispatch_engine.scheduler
        await send_order_webhook(test_client, platform_payload("O1", promised_time=START_TIME + timedelta(hours=2)))
        first_timer = scheduler._timers["S1-O1"]

        await send_order_webhook(test_client, _confirmed(START_TIME + timedelta(hours=4)))

        delivery = await get_delivery(session_factory, "S1-O1")
        assert delivery.dispatch_due_at == START_TIME + timedelta(hours=3, minutes=30)
        assert first_timer.cancelled()
        assert scheduler.armed_timers == 1
        assert scheduler._timers["S1-O1"] is not first_timer

        # --- בזמן הישן לא יוצא כלום ---
        clock.advance(90 * 60)
        assert await scheduler.scan_once() == 0
        assert courier_api.calls("POST", "/deliveries") == []

        # --- בזמן החדש ---
        clock.advance(120 * 60)
        assert await scheduler.scan_once() == 1
        await scheduler.wait_idle()
        assert len(courier_api.calls("POST", "/deliveries")) == 1

    async def test_earlier_promised_time_fires_now(
        self, test_client, merchant, dispatch_engine, session_factory, courier_api
    ):
        """הקדמה ל-T+20 → dispatch_due_at כבר עבר, הבקשה יוצאת מיד"""
        await send_order_webhook(test_client, platform_payload("O1", promised_time=START_TIME + timedelta(hours=3)))
        assert courier_api.calls("POST", "/deliveries") == []

        await send_order_webhook(test_client, _confirmed(START_TIME + timedelta(minutes=20)))
        await dispatch_engine.scheduler.wait_idle()

        delivery = await get_delivery(session_factory, "S1-O1")
        assert delivery.dispatch_due_at == START_TIME - timedelta(minutes=10)
        assert delivery.dispatched_at == START_TIME
        assert len(courier_api.calls("POST", "/deliveries")) == 1
        assert dispatch_engine.scheduler.armed_timers == 0

    async def test_move_beyond_horizon_drops_timer(
        self, test_client, merchant, dispatch_engine, session_factory
    ):
        """due time מעבר לאופק התזמון → אין טיימר, הסריקה התקופתית תתפוס"""
        scheduler = dispatch_engine.scheduler
        await send_order_webhook(test_client, platform_payload("O1", promised_time=START_TIME + timedelta(hours=2)))
        first_timer = scheduler._timers["S1-O1"]

        await send_order_webhook(test_client, _confirmed(START_TIME + timedelta(hours=10)))

        delivery = await get_delivery(session_factory, "S1-O1")
        assert delivery.dispatch_due_at == START_TIME + timedelta(hours=9, minutes=30)
        assert first_timer.cancelled()
        assert scheduler.armed_timers == 0

    async def test_same_promised_time_keeps_timer(self, test_client, merchant, dispatch_engine):
        promised = START_TIME + timedelta(hours=2)
        await send_order_webhook(test_client, platform_payload("O1", promised_time=promised))
        first_timer = dispatch_engine.scheduler._timers["S1-O1"]

        await send_order_webhook(test_client, _confirmed(promised))

        assert not first_timer.cancelled()
        assert dispatch_engine.scheduler._timers["S1-O1"] is first_timer

    async def test_dispatched_delivery_is_not_rescheduled(
        self, test_client, merchant, dispatch_engine, session_factory, courier_api
    ):
        await send_order_webhook(test_client, platform_payload("O1"))
        await dispatch_engine.scheduler.wait_idle()
        assert len(courier_api.calls("POST", "/deliveries")) == 1

        await send_order_webhook(test_client, _confirmed(START_TIME + timedelta(hours=4)))
        await dispatch_engine.scheduler.wait_idle()

        delivery = await get_delivery(session_factory, "S1-O1")
        assert delivery.dispatch_due_at == START_TIME
        assert len(courier_api.calls("POST", "/deliveries")) == 1
        assert dispatch_engine.scheduler.armed_timers == 0


@pytest.mark.scenario
class TestFulfillmentTypeChange:
    """סוג ההזמנה משתנה בעדכון מהפלטפורמה"""

    async def test_pickup_becomes_delivery(self, test_client, merchant, dispatch_engine, session_factory):
        await send_order_webhook(test_client, platform_payload("O1", fulfillment="pickup"))
        assert await get_delivery(session_factory, "S1-O1") is None

        await send_order_webhook(
            test_client, _confirmed(START_TIME + timedelta(hours=2), fulfillment="delivery")
        )

        order = await assert_order_status(session_factory, "O1", OrderStatus.CONFIRMED)
        assert order.fulfillment_type == FulfillmentType.DELIVERY
        delivery = await assert_delivery_status(session_factory, "S1-O1", DeliveryStatus.PENDING)
        assert delivery.dispatch_due_at == START_TIME + timedelta(hours=1, minutes=30)
        assert dispatch_engine.scheduler.armed_timers == 1

    async def test_delivery_becomes_pickup_cancels_delivery(
        self, test_client, merchant, dispatch_engine, session_factory, courier_api
    ):
        await send_order_webhook(test_client, platform_payload("O1", promised_time=START_TIME + timedelta(hours=2)))
        assert dispatch_engine.scheduler.armed_timers == 1

        await send_order_webhook(test_client, _confirmed(fulfillment="pickup"))

        order = await assert_order_status(session_factory, "O1", OrderStatus.CONFIRMED)
        assert order.fulfillment_type == FulfillmentType.PICKUP
        await assert_delivery_status(session_factory, "S1-O1", DeliveryStatus.CANCELLED)
        assert dispatch_engine.scheduler.armed_timers == 0
        assert courier_api.requests == []

    async def test_update_without_type_keeps_fulfillment(
        self, test_client, merchant, dispatch_engine, session_factory
    ):
        """עדכון שלא נושא type לא הופך הזמנת משלוח ל-pickup"""
        await send_order_webhook(test_client, platform_payload("O1", promised_time=START_TIME + timedelta(hours=2)))
        payload = _confirmed()
        del payload["order"]["type"]

        await send_order_webhook(test_client, payload)

        order = await assert_order_status(session_factory, "O1", OrderStatus.CONFIRMED)
        assert order.fulfillment_type == FulfillmentType.DELIVERY
        await assert_delivery_status(session_factory, "S1-O1", DeliveryStatus.PENDING)
        assert dispatch_engine.scheduler.armed_timers == 1
