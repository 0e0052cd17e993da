"""
בדיקות Merchant Notification Service.

בדיקות עבור:
1. הפעלה לפי הגדרות SMTP
2. תוכן ההודעה ושליחה ב-SMTP (starttls / SSL)
3. כשל SMTP לא מכשיל את עיבוד האירוע
4. מתי ה-processor שולח התראה
"""
import json
import smtplib
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.models.order import FulfillmentType, Order, OrderStatus
from app.db.models.webhook_event import EventSource, WebhookEventStatus
from app.domain.services.merchant_notification_service import (
    MerchantNotificationService,
    NotificationEvent,
    SmtpConfig,
    build_subject,
    build_text_body,
)
from tests.conftest import make_settings, platform_payload
from tests.scenarios.conftest import assert_event_statuses, send_order_webhook

_SMTP = "app.domain.services.merchant_notification_service.smtplib.SMTP"

_SMTP_SETTINGS = {
    "SMTP_HOST": "smtp.example.com",
    "SMTP_PORT": 587,
    "SMTP_USER": "bot@example.com",
    "SMTP_PASSWORD": "app-password",
    "MERCHANT_NOTIFICATION_EMAIL": "owner@pizza.example",
}


def _config(**overrides) -> SmtpConfig:
    values = {
        "host": "smtp.example.com",
        "port": 587,
        "user": "bot@example.com",
        "password": "app-password",
        "sender": "bot@example.com",
        "recipient": "owner@pizza.example",
    }
    values.update(overrides)
    return SmtpConfig(**values)


def _order(**overrides) -> Order:
    values = {
        "store_id": "S1",
        "platform_order_id": "O1",
        "status": OrderStatus.PENDING,
        "fulfillment_type": FulfillmentType.DELIVERY,
        "promised_time": datetime(2026, 3, 1, 13, 0),
        "raw_data": {
            "client_first_name": "Dana",
            "client_last_name": "Levi",
            "client_phone": "+12175550100",
            "total_price": 42.5,
            "currency": "USD",
        },
    }
    values.update(overrides)
    return Order(**values)


# ============================================================================
# 1. הגדרות
# ============================================================================


class TestSmtpConfig:

    @pytest.mark.unit
    def test_from_settings_defaults_sender_to_user(self):
        config = SmtpConfig.from_settings(make_settings(**_SMTP_SETTINGS))

        assert config.is_configured
        assert config.sender == "bot@example.com"
        assert config.recipient == "owner@pizza.example"

    @pytest.mark.unit
    def test_explicit_sender(self):
        config = SmtpConfig.from_settings(make_settings(**_SMTP_SETTINGS, SMTP_FROM="orders@pizza.example"))
        assert config.sender == "orders@pizza.example"

    @pytest.mark.unit
    @pytest.mark.parametrize("missing", ["host", "user", "password", "recipient"])
    def test_missing_field_disables(self, missing):
        assert not _config(**{missing: ""}).is_configured

    @pytest.mark.unit
    async def test_disabled_service_sends_nothing(self):
        service = MerchantNotificationService(_config(host=""))

        with patch(_SMTP) as smtp_cls:
            sent = await service.notify(_order(), NotificationEvent.NEW_ORDER)

        assert not service.enabled
        assert sent is False
        smtp_cls.assert_not_called()


# ============================================================================
# 2. תוכן ושליחה
# ============================================================================


class TestMessageContent:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "event,expected",
        [
            (NotificationEvent.NEW_ORDER, "New order O1 (PENDING)"),
            (NotificationEvent.STATUS_UPDATE, "Order O1 status updated to PENDING"),
            (NotificationEvent.CANCELLED, "Order O1 was cancelled"),
        ],
    )
    def test_subject(self, event, expected):
        assert build_subject(_order(), event) == expected

    @pytest.mark.unit
    def test_text_body(self):
        body = build_text_body(_order(status=OrderStatus.CONFIRMED), NotificationEvent.STATUS_UPDATE, "pending")

        assert "Status: confirmed" in body
        assert "Previous status: pending" in body
        assert "Customer: Dana Levi" in body
        assert "Total: USD 42.5" in body
        assert "Promised time (UTC): 2026-03-01T13:00:00" in body

    @pytest.mark.unit
    def test_body_without_customer_details(self):
        body = build_text_body(_order(raw_data={}, promised_time=None), NotificationEvent.NEW_ORDER)

        assert "Customer: N/A" in body
        assert "Phone: N/A" in body
        assert "Promised time" not in body
        assert "Total" not in body

    @pytest.mark.unit
    def test_html_part_is_escaped(self):
        service = MerchantNotificationService(_config())
        order = _order(raw_data={"client_first_name": "<b>Dana</b>"})

        msg = service.format_message(order, NotificationEvent.NEW_ORDER)

        plain, html = msg.get_payload()
        assert "<b>Dana</b>" in plain.get_payload()
        assert "&lt;b&gt;Dana&lt;/b&gt;" in html.get_payload()
        assert msg["To"] == "owner@pizza.example"


class TestSmtpDelivery:

    @pytest.mark.unit
    async def test_sends_with_starttls(self):
        service = MerchantNotificationService(_config())

        with patch(_SMTP) as smtp_cls:
            sent = await service.notify(_order(), NotificationEvent.NEW_ORDER)

        assert sent is True
        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=15)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "app-password")
        msg = server.send_message.call_args.args[0]
        assert msg["Subject"] == "New order O1 (PENDING)"

    @pytest.mark.unit
    async def test_ssl_skips_starttls(self):
        service = MerchantNotificationService(_config(port=465, use_ssl=True))

        with patch("app.domain.services.merchant_notification_service.smtplib.SMTP_SSL") as smtp_cls:
            sent = await service.notify(_order(), NotificationEvent.CANCELLED)

        assert sent is True
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_not_called()
        server.send_message.assert_called_once()

    @pytest.mark.unit
    async def test_smtp_error_returns_false(self):
        service = MerchantNotificationService(_config())

        with patch(_SMTP) as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            sent = await service.notify(_order(), NotificationEvent.NEW_ORDER)

        assert sent is False
        server.send_message.assert_not_called()


# ============================================================================
# 3-4. שילוב עם עיבוד אירועי הפלטפורמה
# ============================================================================


class TestProcessorNotifications:

    @pytest.fixture
    def notifier(self, dispatch_engine) -> MagicMock:
        stub = MagicMock(spec=MerchantNotificationService)
        stub.notify = AsyncMock(return_value=True)
        dispatch_engine.processor.notifier = stub
        return stub

    @pytest.mark.unit
    def test_engine_without_smtp_is_disabled(self, dispatch_engine):
        assert dispatch_engine.notifier.enabled is False

    @pytest.mark.unit
    async def test_order_lifecycle_notifications(self, test_client, merchant, notifier):
        await send_order_webhook(test_client, platform_payload("O1", fulfillment="pickup"))
        await send_order_webhook(
            test_client, platform_payload("O1", event_type="order.confirmed", fulfillment="pickup")
        )
        await send_order_webhook(
            test_client, platform_payload("O1", event_type="order.cancelled", fulfillment="pickup")
        )

        calls = [call.args[1:] for call in notifier.notify.await_args_list]
        assert calls == [
            (NotificationEvent.NEW_ORDER,),
            (NotificationEvent.STATUS_UPDATE, "pending"),
            (NotificationEvent.CANCELLED, "confirmed"),
        ]
        assert notifier.notify.await_args_list[0].args[0].platform_order_id == "O1"

    @pytest.mark.unit
    async def test_duplicate_event_does_not_notify_again(self, test_client, merchant, notifier):
        payload = platform_payload("O1", fulfillment="pickup")

        await send_order_webhook(test_client, payload)
        await send_order_webhook(test_client, payload)

        assert notifier.notify.await_count == 1

    @pytest.mark.unit
    async def test_smtp_outage_does_not_fail_event(self, engine_factory, merchant, session_factory):
        engine = engine_factory(**_SMTP_SETTINGS)
        body = platform_payload("O1", fulfillment="pickup")

        with patch(_SMTP, side_effect=OSError("connection refused")):
            await engine.ingest_platform_webhook(json.dumps(body).encode(), {})

        assert engine.notifier.enabled
        await assert_event_statuses(session_factory, EventSource.ORDERING_PLATFORM, WebhookEventStatus.SUCCEEDED)
