"""
Webhook Processor - ה-handlers העסקיים שה-Retry Executor מריץ.

handler אחד לכל מקור, מפורמטר לפי יכולות ה-tenant
(requires_signature, auto_dispatch_enabled) ולא לפי קוד נפרד לכל וריאנט.
כל ה-handlers נועלים את מפתח ההזמנה, כך שאירועים לאותה הזמנה רצים
בזה אחר זה ואירועים להזמנות שונות רצים במקביל.
"""
from __future__ import annotations

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.core.encryption import CredentialCipher
from app.core.exceptions import DeliveryNotFoundError
from app.core.keyed_lock import KeyedLock, order_lock_key
from app.core.logging import get_logger
from app.db.models.delivery import Delivery, DeliveryStatus
from app.db.models.order import FulfillmentType, Order, OrderStatus
from app.domain.events import CourierDeliveryEvent, LoggedEvent, PlatformOrderEvent
from app.domain.services.dispatch_scheduler import DispatchScheduler, compute_dispatch_due_at
from app.domain.services.merchant_notification_service import (
    MerchantNotificationService,
    NotificationEvent,
)
from app.domain.services.merchant_registry import MerchantRegistry
from app.domain.services.outbound.courier import CourierClient
from app.domain.services.outbound.ordering_platform import OrderingPlatformClient
from app.domain.services.webhook_security import WebhookSecurityValidator
from app.state_machine.manager import OrderChange, OrderStateMachine
from app.state_machine.states import (
    PLATFORM_EVENT_STATUS,
    normalize_delivery_status,
    normalize_order_status,
)

logger = get_logger(__name__)

CANCEL_REASON = "cancelled_by_merchant"


def resolve_platform_status(event: PlatformOrderEvent) -> OrderStatus | None:
    """Event types that imply a status win over the payload's status field"""
    implied = PLATFORM_EVENT_STATUS.get(event.event_type.lower())
    if implied is not None:
        return implied
    status = normalize_order_status(event.status)
    if status is None and event.status:
        logger.warning(
            "Unknown platform order status ignored",
            extra_data={
                "store_id": event.store_id,
                "platform_order_id": event.platform_order_id,
                "status": event.status,
            },
        )
    return status


class WebhookProcessor:
    """Platform and courier event handlers"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher | None,
        locks: KeyedLock,
        scheduler: DispatchScheduler,
        courier: CourierClient,
        platform: OrderingPlatformClient,
        *,
        lead_buffer: timedelta = timedelta(minutes=30),
        status_sync_enabled: bool = False,
        clock: Clock = system_clock,
        validator: WebhookSecurityValidator | None = None,
        notifier: MerchantNotificationService | None = None,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.locks = locks
        self.scheduler = scheduler
        self.courier = courier
        self.platform = platform
        self.lead_buffer = lead_buffer
        self.status_sync_enabled = status_sync_enabled
        self.clock = clock
        self.validator = validator or WebhookSecurityValidator()
        self.notifier = notifier

    # ==================== Ordering platform ====================

    async def handle_platform_event(self, logged: LoggedEvent) -> None:
        event = self.validator.parse_platform_payload(logged.payload)
        target = resolve_platform_status(event)

        async with self.locks.hold(order_lock_key(event.store_id, event.platform_order_id)):
            to_schedule = None
            to_cancel = None

            async with self.session_factory() as db:
                profile = await MerchantRegistry(db, self.cipher).resolve(event.store_id)
                machine = OrderStateMachine(db)
                change = await machine.upsert_order(event, target)
                order = change.order

                due_at = None
                if profile.auto_dispatch_enabled:
                    due_at = compute_dispatch_due_at(order.promised_time, self.lead_buffer, self.clock.now())

                delivery = await machine.get_delivery_for_order(order)
                if (
                    delivery is None
                    and order.fulfillment_type == FulfillmentType.DELIVERY
                    and not machine.is_order_terminal(order)
                ):
                    created = await machine.ensure_delivery(order, due_at)
                    delivery = created.delivery
                    if created.created and due_at is not None:
                        to_schedule = (delivery.external_delivery_id, due_at)
                elif (
                    delivery is not None
                    and change.promised_time_changed
                    and due_at is not None
                    and machine.reschedule_delivery(delivery, due_at)
                ):
                    to_schedule = (delivery.external_delivery_id, due_at)

                if delivery is not None and (
                    order.status == OrderStatus.CANCELLED
                    or (change.fulfillment_changed and order.fulfillment_type == FulfillmentType.PICKUP)
                ):
                    to_cancel = self._cancel_locally(machine, delivery)
                    to_schedule = None

                await db.commit()

            if to_schedule is not None:
                self.scheduler.schedule_dispatch(*to_schedule)
            await self._notify(change)
            if to_cancel is not None:
                await self._cancel_with_courier(to_cancel)

    async def _notify(self, change: OrderChange) -> None:
        """Merchant mail on a new order, a cancellation or a status change"""
        if self.notifier is None:
            return
        previous = change.previous_status.value if change.previous_status else None
        if change.created:
            await self.notifier.notify(change.order, NotificationEvent.NEW_ORDER)
        elif change.status_changed and change.order.status == OrderStatus.CANCELLED:
            await self.notifier.notify(change.order, NotificationEvent.CANCELLED, previous)
        elif change.status_changed:
            await self.notifier.notify(change.order, NotificationEvent.STATUS_UPDATE, previous)

    def _cancel_locally(self, machine: OrderStateMachine, delivery: Delivery) -> str | None:
        """
        Cancel an order's delivery.

        Undispatched deliveries are cancelled here. Dispatched ones need
        the courier's confirmation; their external id is returned.
        """
        if machine.is_delivery_terminal(delivery):
            return None
        self.scheduler.cancel(delivery.external_delivery_id)
        if delivery.dispatched_at is None:
            machine.transition_delivery(delivery, DeliveryStatus.CANCELLED, reason="order_cancelled")
            return None
        return delivery.external_delivery_id

    async def _cancel_with_courier(self, external_id: str) -> None:
        # ביטול מפורש מול השליחויות הוא המנגנון הקובע; חוזר על עצמו בבטחה ב-retry
        await self.courier.cancel_delivery(external_id, CANCEL_REASON)
        async with self.session_factory() as db:
            machine = OrderStateMachine(db)
            delivery = await machine.get_delivery(external_id)
            if delivery is not None:
                machine.transition_delivery(delivery, DeliveryStatus.CANCELLED, reason="order_cancelled")
                await db.commit()

    # ==================== Courier network ====================

    async def _find_order_key(self, event: CourierDeliveryEvent) -> str:
        async with self.session_factory() as db:
            machine = OrderStateMachine(db)
            delivery = await machine.find_delivery(event)
            if delivery is None:
                raise DeliveryNotFoundError(event.lookup_key)
            order = await machine.get_order_by_id(delivery.order_id)
            if order is None:
                raise DeliveryNotFoundError(event.lookup_key)
            return order_lock_key(order.store_id, order.platform_order_id)

    async def handle_courier_event(self, logged: LoggedEvent) -> None:
        event = self.validator.parse_courier_payload(logged.payload)
        target = normalize_delivery_status(event.status)
        lock_key = await self._find_order_key(event)

        async with self.locks.hold(lock_key):
            async with self.session_factory() as db:
                machine = OrderStateMachine(db)
                delivery = await machine.find_delivery(event)
                if delivery is None:
                    raise DeliveryNotFoundError(event.lookup_key)

                if target is None:
                    logger.warning(
                        "Unmapped courier status ignored",
                        extra_data={
                            "external_delivery_id": delivery.external_delivery_id,
                            "status": event.status,
                            "event_type": event.event_type,
                        },
                    )
                    return

                change = await machine.apply_courier_status(delivery, target, event)
                await db.commit()

            order = change.order
            if (
                self.status_sync_enabled
                and order is not None
                and change.mapped_order_status is not None
                and order.status == change.mapped_order_status
            ):
                await self._sync_platform_status(order)

    async def _sync_platform_status(self, order: Order) -> None:
        """Push the back-propagated order status to the ordering platform"""
        async with self.session_factory() as db:
            registry = MerchantRegistry(db, self.cipher)
            profile = await registry.resolve(order.store_id)

            async def reload():
                return (await registry.resolve(order.store_id)).credentials

            await self.platform.update_order_status(
                profile.credentials,
                order.platform_order_id,
                order.status.value,
                reload=reload,
            )
