"""
Merchant Notification Service - התראות מייל למרצ'נט על הזמנות.

נשלחות על הזמנה חדשה, שינוי סטטוס וביטול. השירות כבוי כשחסרה
הגדרת SMTP (SMTP_HOST/SMTP_USER/SMTP_PASSWORD/MERCHANT_NOTIFICATION_EMAIL).
כשל בשליחה נרשם ללוג ולא מכשיל את עיבוד האירוע.
"""
from __future__ import annotations

import asyncio
import enum
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any

from app.core.config import Settings
from app.core.logging import get_logger
from app.db.models.order import Order

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 15


class NotificationEvent(str, enum.Enum):
    NEW_ORDER = "new-order"
    STATUS_UPDATE = "status-update"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str = ""
    sender: str = ""
    recipient: str = ""
    use_ssl: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpConfig":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM or settings.SMTP_USER,
            recipient=settings.MERCHANT_NOTIFICATION_EMAIL,
            use_ssl=settings.SMTP_USE_SSL,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.recipient)


def _customer_name(raw: dict[str, Any]) -> str:
    name = " ".join(
        str(part) for part in (raw.get("client_first_name"), raw.get("client_last_name")) if part
    )
    return name or "N/A"


def build_subject(order: Order, event: NotificationEvent) -> str:
    status = order.status.value.upper()
    if event == NotificationEvent.NEW_ORDER:
        return f"New order {order.platform_order_id} ({status})"
    if event == NotificationEvent.CANCELLED:
        return f"Order {order.platform_order_id} was cancelled"
    return f"Order {order.platform_order_id} status updated to {status}"


def build_text_body(order: Order, event: NotificationEvent, previous_status: str | None = None) -> str:
    raw = order.raw_data or {}
    lines = [
        f"Event: {event.value}",
        f"Store: {order.store_id}",
        f"Order ID: {order.platform_order_id}",
        f"Status: {order.status.value}",
    ]
    if previous_status:
        lines.append(f"Previous status: {previous_status}")
    lines.extend([
        f"Fulfillment: {order.fulfillment_type.value}",
        f"Customer: {_customer_name(raw)}",
        f"Phone: {raw.get('client_phone') or 'N/A'}",
    ])
    if order.promised_time is not None:
        lines.append(f"Promised time (UTC): {order.promised_time.isoformat()}")
    if raw.get("total_price") is not None:
        currency = raw.get("currency")
        total = f"{currency} {raw['total_price']}" if currency else str(raw["total_price"])
        lines.append(f"Total: {total}")
    return "\n".join(lines)


class MerchantNotificationService:
    """Sends order notifications to the merchant's inbox over SMTP"""

    def __init__(self, config: SmtpConfig):
        self.config = config
        if not config.is_configured:
            logger.info(
                "Merchant email notifications disabled",
                extra_data={"missing": "SMTP_HOST/SMTP_USER/SMTP_PASSWORD/MERCHANT_NOTIFICATION_EMAIL"},
            )

    @property
    def enabled(self) -> bool:
        return self.config.is_configured

    def format_message(
        self,
        order: Order,
        event: NotificationEvent,
        previous_status: str | None = None,
    ) -> MIMEMultipart:
        text_body = build_text_body(order, event, previous_status)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = build_subject(order, event)
        msg["From"] = self.config.sender
        msg["To"] = self.config.recipient
        msg.attach(MIMEText(text_body, "plain"))
        html_lines = "".join(f"<p>{escape(line)}</p>" for line in text_body.splitlines())
        msg.attach(MIMEText(f'<div style="font-family: Arial, sans-serif;">{html_lines}</div>', "html"))
        return msg

    def _send(self, msg: MIMEMultipart) -> None:
        smtp_class = smtplib.SMTP_SSL if self.config.use_ssl else smtplib.SMTP
        with smtp_class(self.config.host, self.config.port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            if not self.config.use_ssl:
                server.starttls()
            server.login(self.config.user, self.config.password)
            server.send_message(msg)

    async def notify(
        self,
        order: Order,
        event: NotificationEvent,
        previous_status: str | None = None,
    ) -> bool:
        """
        Send one notification. Returns True if the mail was handed to SMTP.

        SMTP runs in a worker thread so the event loop is not blocked.
        """
        if not self.enabled:
            return False
        msg = self.format_message(order, event, previous_status)
        try:
            await asyncio.to_thread(self._send, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "Merchant notification failed",
                extra_data={
                    "store_id": order.store_id,
                    "platform_order_id": order.platform_order_id,
                    "event": event.value,
                    "error": str(e),
                },
            )
            return False

        logger.info(
            "Merchant notification sent",
            extra_data={
                "store_id": order.store_id,
                "platform_order_id": order.platform_order_id,
                "event": event.value,
            },
        )
        return True
