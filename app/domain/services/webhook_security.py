"""
Webhook Security Validator — אימות בקשות webhook נכנסות.

בדיקות:
1. ה-payload הוא JSON עם מזהה tenant ומזהה הזמנה/משלוח לא ריקים
2. אם ל-tenant מוגדר secret — HMAC-SHA256 על ה-body הגולמי, השוואה ב-constant time

ללא side effects. כשלון = AuthenticationFailed (401) או MalformedPayload (400),
שניהם סופיים ולא נכנסים ל-retry.
"""
import hashlib
import hmac
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from app.core.clock import to_naive_utc
from app.core.exceptions import AuthenticationFailed, MalformedPayload
from app.core.logging import get_logger
from app.db.models.order import FulfillmentType
from app.domain.events import CourierDeliveryEvent, PlatformOrderEvent

logger = get_logger(__name__)

SIGNATURE_HEADERS = ("x-webhook-signature", "x-gloria-signature")
COURIER_SIGNATURE_HEADERS = ("x-webhook-signature", "x-doordash-signature")
SECRET_HEADER = "x-webhook-secret"
_SIGNATURE_PREFIX = "sha256="

_STORE_ID_FIELDS = ("store_id", "storeId", "restaurant_id", "restaurantId")
_ORDER_ID_FIELDS = ("platform_order_id", "order_id", "orderNumber", "order_number", "id")
_EVENT_TYPE_FIELDS = ("event_type", "eventType", "event")
_STATUS_FIELDS = ("new_status", "status", "order_status")
_FULFILLMENT_FIELDS = ("fulfillment_type", "fulfillmentType", "order_type", "type")
_PROMISED_TIME_FIELDS = (
    "promised_time",
    "fulfill_at",
    "delivery_time",
    "deliveryTime",
    "delivery_datetime",
    "scheduled_delivery_time",
    "estimated_delivery_time",
)
_DELIVERY_FULFILLMENT_VALUES = {"delivery", "deliver", "delivered"}

DEFAULT_PLATFORM_EVENT_TYPE = "order.received"
DEFAULT_COURIER_EVENT_TYPE = "delivery.status_changed"


def _first(data: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def _as_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 string or epoch seconds/milliseconds → naive UTC"""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookSecurityValidator:
    """Stateless validator for both inbound webhook sources"""

    # ==================== Body parsing ====================

    @staticmethod
    def _load_json(body: bytes) -> Any:
        if not body:
            raise MalformedPayload("Empty request body")
        try:
            return json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedPayload("Request body is not valid JSON", details={"error": str(e)})

    def split_platform_body(self, body: bytes) -> list[dict[str, Any]]:
        """
        Split a platform request into one payload per order.

        The platform pushes either a single event object or a batch
        ``{"orders": [...]}``; each batched order becomes its own event that
        inherits the top-level fields.
        """
        data = self._load_json(body)
        if not isinstance(data, dict):
            raise MalformedPayload("Payload must be a JSON object")

        orders = data.get("orders")
        if orders is None:
            return [data]
        if not isinstance(orders, list) or not orders:
            raise MalformedPayload("'orders' must be a non-empty list", field="orders")

        envelope = {k: v for k, v in data.items() if k not in ("orders", "count")}
        payloads = []
        for order in orders:
            if not isinstance(order, dict):
                raise MalformedPayload("Every entry in 'orders' must be an object", field="orders")
            payloads.append({**envelope, "order": order})
        return payloads

    def parse_platform_payload(self, payload: Mapping[str, Any]) -> PlatformOrderEvent:
        """Normalize one platform payload (already split) into a PlatformOrderEvent"""
        order = payload.get("order")
        if order is not None and not isinstance(order, dict):
            raise MalformedPayload("'order' must be an object", field="order")
        order = order or {}

        store_id = _as_id(_first(payload, _STORE_ID_FIELDS) or _first(order, _STORE_ID_FIELDS))
        if not store_id:
            raise MalformedPayload("Missing tenant identifier", field="store_id")

        order_id = _as_id(
            _first(payload, _ORDER_ID_FIELDS[:-1]) or _first(order, _ORDER_ID_FIELDS)
        )
        if not order_id:
            raise MalformedPayload("Missing order identifier", field="platform_order_id")

        event_type = str(_first(payload, _EVENT_TYPE_FIELDS) or DEFAULT_PLATFORM_EVENT_TYPE).strip()
        status = _first(payload, _STATUS_FIELDS) or _first(order, _STATUS_FIELDS)

        fulfillment_raw = _first(payload, _FULFILLMENT_FIELDS[:-1]) or _first(order, _FULFILLMENT_FIELDS)
        fulfillment = None
        if fulfillment_raw is not None:
            fulfillment = (
                FulfillmentType.DELIVERY
                if str(fulfillment_raw).strip().lower() in _DELIVERY_FULFILLMENT_VALUES
                else FulfillmentType.PICKUP
            )

        promised_raw = _first(payload, _PROMISED_TIME_FIELDS) or _first(order, _PROMISED_TIME_FIELDS)
        nested_delivery = order.get("delivery") or payload.get("delivery")
        if promised_raw is None and isinstance(nested_delivery, dict):
            promised_raw = _first(nested_delivery, ("time", "delivery_time", "scheduled_time"))
        promised_time = parse_timestamp(promised_raw)
        if promised_raw is not None and promised_time is None:
            raise MalformedPayload("Unparseable promised time", field="promised_time")

        return PlatformOrderEvent(
            event_type=event_type,
            store_id=store_id,
            platform_order_id=order_id,
            status=str(status) if status is not None else None,
            fulfillment_type=fulfillment,
            promised_time=promised_time,
            order=dict(order) if order else {k: v for k, v in payload.items()},
        )

    def parse_courier_body(self, body: bytes) -> dict[str, Any]:
        data = self._load_json(body)
        if not isinstance(data, dict):
            raise MalformedPayload("Payload must be a JSON object")
        self.parse_courier_payload(data)
        return data

    def parse_courier_payload(self, payload: Mapping[str, Any]) -> CourierDeliveryEvent:
        external_id = _as_id(payload.get("external_delivery_id"))
        courier_id = _as_id(
            _first(payload, ("courier_delivery_id", "delivery_id", "support_reference", "id"))
        )
        if not external_id and not courier_id:
            raise MalformedPayload("Missing delivery identifier", field="delivery_id")

        event_name = _first(payload, ("event_name", "event_type", "event"))
        status = _first(payload, ("new_status", "delivery_status", "status")) or event_name

        return CourierDeliveryEvent(
            event_type=str(event_name or DEFAULT_COURIER_EVENT_TYPE),
            courier_delivery_id=courier_id,
            external_delivery_id=external_id,
            status=str(status) if status is not None else None,
            tracking_url=_first(payload, ("tracking_url",)),
            driver_name=_first(payload, ("dasher_name", "driver_name")),
            driver_phone=_first(payload, ("dasher_phone_number", "driver_phone")),
        )

    # ==================== Authentication ====================

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
        *,
        requires_signature: bool = False,
        signature_headers: tuple[str, ...] = SIGNATURE_HEADERS,
        tenant: str | None = None,
    ) -> None:
        """
        Authenticate the raw body against the tenant secret.

        No secret and no requirement → accepted unsigned. A configured secret
        is always enforced, through an HMAC signature header or the plain
        shared-secret header.
        """
        lowered = _lower_headers(headers)

        if not secret:
            if requires_signature:
                logger.error(
                    "Tenant requires signed webhooks but has no secret configured",
                    extra_data={"tenant": tenant},
                )
                raise AuthenticationFailed("Signature required but no secret configured")
            return

        provided = _first(lowered, signature_headers)
        if provided:
            provided = provided.strip()
            if provided.lower().startswith(_SIGNATURE_PREFIX):
                provided = provided[len(_SIGNATURE_PREFIX):]
            expected = compute_signature(body, secret)
            if not hmac.compare_digest(expected, provided.lower()):
                logger.warning("Webhook signature mismatch", extra_data={"tenant": tenant})
                raise AuthenticationFailed("Invalid webhook signature")
            return

        shared = lowered.get(SECRET_HEADER)
        if shared:
            if not hmac.compare_digest(shared.encode("utf-8"), secret.encode("utf-8")):
                logger.warning("Webhook shared secret mismatch", extra_data={"tenant": tenant})
                raise AuthenticationFailed("Invalid webhook secret")
            return

        logger.warning("Webhook signature missing", extra_data={"tenant": tenant})
        raise AuthenticationFailed("Missing webhook signature")

    def verify_courier_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> None:
        """Courier webhooks share one service-level secret"""
        lowered = _lower_headers(headers)
        if secret:
            authorization = lowered.get("authorization")
            if authorization and not _first(lowered, COURIER_SIGNATURE_HEADERS):
                # DoorDash שולח את ה-secret כ-Authorization header
                token = authorization.removeprefix("Bearer ").strip()
                if hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
                    return
                logger.warning("Courier webhook authorization mismatch")
                raise AuthenticationFailed("Invalid courier webhook authorization")
        self.verify_signature(
            body,
            lowered,
            secret,
            signature_headers=COURIER_SIGNATURE_HEADERS,
            tenant="courier",
        )


def payload_content_hash(payload: Mapping[str, Any]) -> str:
    """Stable hash of a payload, used to recognize re-delivered events"""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
