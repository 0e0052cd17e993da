"""
Dispatch Service - שליחת בקשת משלוח לרשת השליחויות.

רץ כ-handler של אירוע delivery.dispatch תחת ה-Retry Executor, ולכן כל
כשלון עובר במסלול ה-retry הרגיל. idempotent לפי external_delivery_id:
משלוח שכבר נשלח מחזיר DuplicateEvent.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.core.encryption import CredentialCipher
from app.core.exceptions import DeliveryNotFoundError, DuplicateEvent, MalformedPayload
from app.core.keyed_lock import KeyedLock, order_lock_key
from app.core.logging import get_logger
from app.db.models.delivery import Delivery
from app.db.models.order import Order
from app.domain.events import LoggedEvent
from app.domain.services.merchant_registry import MerchantRegistry, TenantProfile
from app.domain.services.outbound.courier import CourierClient
from app.state_machine.manager import OrderStateMachine
from app.state_machine.states import normalize_delivery_status

logger = get_logger(__name__)

MIN_ADDRESS_LENGTH = 10
DEFAULT_COUNTRY = "US"


def normalize_phone(raw: Any) -> str:
    """Keep digits and a leading '+', no country guessing"""
    return re.sub(r"[^\d+]", "", str(raw or ""))


def to_cents(value: Any) -> int | None:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    return round(amount * 100)


def _text(*values: Any) -> str:
    for value in values:
        if value not in (None, ""):
            return str(value).strip()
    return ""


def _pickup_address(data: dict[str, Any], profile: TenantProfile) -> str:
    if profile.pickup_address and profile.pickup_address.strip():
        return profile.pickup_address.strip()

    restaurant = data.get("restaurant") if isinstance(data.get("restaurant"), dict) else {}
    parts = [
        _text(data.get("restaurant_street"), restaurant.get("street"), data.get("merchant_street")),
        _text(data.get("restaurant_city"), restaurant.get("city"), data.get("merchant_city")),
        _text(data.get("restaurant_state"), restaurant.get("state"), data.get("merchant_state")),
        _text(
            data.get("restaurant_zipcode"), restaurant.get("zipcode"),
            restaurant.get("zip"), data.get("merchant_zipcode"),
        ),
        _text(data.get("restaurant_country"), restaurant.get("country"), data.get("merchant_country")),
    ]
    if not any(parts[:4]):
        return ""
    return ", ".join(p for p in parts if p)


def _dropoff_parts(data: dict[str, Any]) -> dict[str, str]:
    """Structured customer address from whichever shape the order carries"""
    delivery = data.get("delivery") if isinstance(data.get("delivery"), dict) else None
    source: dict[str, Any] | None = None
    if isinstance(data.get("client_address_parts"), dict):
        source = data["client_address_parts"]
    elif delivery is not None and isinstance(delivery.get("address"), dict):
        source = delivery["address"]
    elif delivery is not None:
        source = delivery

    if source is not None:
        return {
            "street": _text(source.get("street"), source.get("address"),
                            source.get("address_line_1"), source.get("line1")),
            "city": _text(source.get("city"), source.get("locality")),
            "state": _text(source.get("state"), source.get("province"), source.get("region")),
            "zip": _text(source.get("zip"), source.get("postal_code"), source.get("postcode")),
            "country": _text(source.get("country"), DEFAULT_COUNTRY),
        }

    full = _text(data.get("client_address"), data.get("delivery_address"))
    zip_match = re.search(r"\b(\d{5}(?:-\d{4})?)\b", full)
    return {
        "street": full,
        "city": "",
        "state": "",
        "zip": zip_match.group(1) if zip_match else "",
        "country": "",
    }


def build_drive_payload(
    order_data: dict[str, Any],
    profile: TenantProfile,
    external_delivery_id: str,
    *,
    promised_time: datetime | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Build a DoorDash Drive create-delivery request from a platform order.

    Raises:
        MalformedPayload: pickup or dropoff address is missing or too short
    """
    pickup_address = _pickup_address(order_data, profile)
    if len(pickup_address) < MIN_ADDRESS_LENGTH:
        raise MalformedPayload(
            "Invalid pickup address: set the merchant pickup address or send restaurant address fields",
            field="pickup_address",
        )

    parts = _dropoff_parts(order_data)
    state_zip = " ".join(p for p in (parts["state"], parts["zip"]) if p)
    dropoff_address = ", ".join(p for p in (parts["street"], parts["city"], state_zip, parts["country"]) if p)
    if not parts["street"] or len(dropoff_address) < MIN_ADDRESS_LENGTH:
        raise MalformedPayload(
            "Invalid dropoff address: order has no usable customer delivery address",
            field="dropoff_address",
        )

    client = order_data.get("client") if isinstance(order_data.get("client"), dict) else {}
    restaurant = order_data.get("restaurant") if isinstance(order_data.get("restaurant"), dict) else {}

    payload: dict[str, Any] = {
        "external_delivery_id": external_delivery_id,
        "pickup_address": pickup_address,
    }

    pickup_phone = normalize_phone(
        _text(profile.pickup_phone, order_data.get("restaurant_phone"), restaurant.get("phone"))
    )
    if pickup_phone:
        payload["pickup_phone_number"] = pickup_phone

    business_name = _text(
        profile.pickup_business_name,
        order_data.get("restaurant_name"),
        restaurant.get("name"),
        profile.merchant_name,
    )
    if business_name:
        payload["pickup_business_name"] = business_name

    if all(parts[k] for k in ("street", "city", "state", "zip")):
        payload["dropoff_address_components"] = {
            "street_address": parts["street"],
            "city": parts["city"],
            "state": parts["state"],
            "zip_code": parts["zip"],
            "country": parts["country"] or DEFAULT_COUNTRY,
        }
    else:
        payload["dropoff_address"] = dropoff_address

    dropoff_phone = normalize_phone(_text(order_data.get("client_phone"), client.get("phone")))
    if dropoff_phone:
        payload["dropoff_phone_number"] = dropoff_phone

    given = _text(order_data.get("client_first_name"), client.get("first_name"))
    family = _text(order_data.get("client_last_name"), client.get("last_name"))
    if given:
        payload["dropoff_contact_given_name"] = given
    if family:
        payload["dropoff_contact_family_name"] = family

    instructions = _text(
        order_data.get("instructions"), order_data.get("notes"), order_data.get("special_instructions")
    )
    if instructions:
        payload["dropoff_instructions"] = instructions

    order_value = to_cents(_text(order_data.get("total_price"), order_data.get("total")) or None)
    if order_value is not None:
        payload["order_value"] = order_value

    if promised_time is not None and (now is None or promised_time > now):
        payload["dropoff_time"] = promised_time.isoformat() + "Z"

    return payload


class DispatchService:
    """Creates the courier delivery for a due Delivery row"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher | None,
        courier: CourierClient,
        locks: KeyedLock,
        *,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.courier = courier
        self.locks = locks
        self.clock = clock

    async def _load(self, machine: OrderStateMachine, external_id: str) -> tuple[Delivery, Order]:
        delivery = await machine.get_delivery(external_id)
        if delivery is None:
            raise DeliveryNotFoundError(external_id)
        order = await machine.get_order_by_id(delivery.order_id)
        if order is None:
            raise DeliveryNotFoundError(external_id)
        return delivery, order

    async def dispatch(self, event: LoggedEvent) -> None:
        """Handler for ``delivery.dispatch`` events"""
        external_id = event.payload.get("external_delivery_id")
        if not external_id:
            raise MalformedPayload("Dispatch event has no external_delivery_id", field="external_delivery_id")

        async with self.session_factory() as db:
            _, order = await self._load(OrderStateMachine(db), external_id)
            lock_key = order_lock_key(order.store_id, order.platform_order_id)

        async with self.locks.hold(lock_key):
            async with self.session_factory() as db:
                machine = OrderStateMachine(db)
                delivery, order = await self._load(machine, external_id)

                if delivery.dispatched_at is not None:
                    raise DuplicateEvent("delivery already dispatched", details={"external_delivery_id": external_id})

                # בדיקת ביטול מיד לפני הקריאה לשליחויות
                if machine.is_order_terminal(order) or machine.is_delivery_terminal(delivery):
                    logger.info(
                        "Dispatch skipped, order or delivery is terminal",
                        extra_data={
                            "external_delivery_id": external_id,
                            "order_status": order.status.value,
                            "delivery_status": delivery.status.value,
                        },
                    )
                    return

                profile = await MerchantRegistry(db, self.cipher).resolve(order.store_id)
                payload = build_drive_payload(
                    dict(order.raw_data or {}),
                    profile,
                    external_id,
                    promised_time=order.promised_time,
                    now=self.clock.now(),
                )

            created = await self.courier.create_delivery(payload)

            async with self.session_factory() as db:
                machine = OrderStateMachine(db)
                delivery, _ = await self._load(machine, external_id)
                delivery.courier_delivery_id = created.courier_delivery_id or delivery.courier_delivery_id
                delivery.tracking_url = created.tracking_url or delivery.tracking_url
                delivery.dispatched_at = self.clock.now()
                delivery.dispatch_failed_at = None
                delivery.last_error = None
                courier_status = normalize_delivery_status(created.status)
                if courier_status is not None:
                    machine.transition_delivery(delivery, courier_status, reason="create_delivery")
                await db.commit()

        logger.info(
            "Delivery dispatched",
            extra_data={
                "external_delivery_id": external_id,
                "courier_delivery_id": created.courier_delivery_id,
            },
        )

    async def record_failure(self, external_id: str, error: str) -> None:
        """Mark a delivery whose dispatch event failed permanently"""
        async with self.session_factory() as db:
            delivery = await OrderStateMachine(db).get_delivery(external_id)
            if delivery is None or delivery.dispatched_at is not None:
                return
            delivery.dispatch_failed_at = self.clock.now()
            delivery.last_error = error[:2000]
            await db.commit()
        logger.error(
            "ALERT: delivery dispatch failed",
            extra_data={"alert": True, "external_delivery_id": external_id, "error": error},
        )

    async def clear_failure(self, external_id: str) -> Delivery:
        """Allow a failed dispatch to be attempted again"""
        async with self.session_factory() as db:
            delivery = await OrderStateMachine(db).get_delivery(external_id)
            if delivery is None:
                raise DeliveryNotFoundError(external_id)
            delivery.dispatch_failed_at = None
            if delivery.dispatch_due_at is None:
                delivery.dispatch_due_at = self.clock.now()
            await db.commit()
            return delivery
