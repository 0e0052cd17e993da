"""
Normalized event shapes passed between the webhook edge, the log and the handlers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.db.models.order import FulfillmentType


@dataclass(frozen=True)
class PlatformOrderEvent:
    """Order event from the ordering platform, after validation"""
    event_type: str
    store_id: str
    platform_order_id: str
    status: str | None = None
    # None = לא צוין באירוע; הזמנה חדשה נשמרת כ-pickup
    fulfillment_type: FulfillmentType | None = None
    promised_time: datetime | None = None
    order: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CourierDeliveryEvent:
    """Delivery status change from the courier network, after validation"""
    event_type: str
    courier_delivery_id: str | None
    external_delivery_id: str | None
    status: str | None
    tracking_url: str | None = None
    driver_name: str | None = None
    driver_phone: str | None = None

    @property
    def lookup_key(self) -> str:
        return self.external_delivery_id or self.courier_delivery_id or ""


@dataclass(frozen=True)
class LoggedEvent:
    """What a handler receives from the Retry Executor"""
    id: str
    source: str
    event_type: str
    payload: dict[str, Any]
    store_id: str | None = None
    resource_key: str | None = None
    attempt: int = 1
