"""
Order/Delivery State Manager

Applies lifecycle transitions and persists them. All writes are upserts
keyed by (store_id, platform_order_id) / external_delivery_id, so replaying
an event never creates a second row. The caller owns the transaction.
"""
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.delivery import Delivery, DeliveryStatus, build_external_delivery_id
from app.db.models.order import FulfillmentType, Order, OrderStatus
from app.domain.events import CourierDeliveryEvent, PlatformOrderEvent
from app.state_machine.states import (
    COURIER_TO_ORDER_STATUS,
    TERMINAL_DELIVERY_STATUSES,
    TERMINAL_ORDER_STATUSES,
    is_valid_delivery_transition,
    is_valid_order_transition,
)

logger = get_logger(__name__)


@dataclass
class OrderChange:
    order: Order
    created: bool
    previous_status: OrderStatus | None
    status_changed: bool
    promised_time_changed: bool = False
    fulfillment_changed: bool = False


@dataclass
class DeliveryChange:
    delivery: Delivery
    created: bool


@dataclass
class CourierChange:
    delivery: Delivery
    order: Order | None
    delivery_changed: bool
    order_changed: bool
    mapped_order_status: OrderStatus | None


class OrderStateMachine:
    """Persists order and delivery transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Orders ====================

    async def get_order(self, store_id: str, platform_order_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order).where(
                Order.store_id == store_id,
                Order.platform_order_id == platform_order_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_order(
        self,
        event: PlatformOrderEvent,
        target_status: OrderStatus | None,
    ) -> OrderChange:
        """
        Insert the order if absent, otherwise update it in place.

        Optimistic INSERT inside a savepoint; a concurrent insert of the
        same key surfaces as IntegrityError and falls back to update.
        """
        order = await self.get_order(event.store_id, event.platform_order_id)
        if order is None:
            order = Order(
                store_id=event.store_id,
                platform_order_id=event.platform_order_id,
                status=target_status or OrderStatus.PENDING,
                fulfillment_type=event.fulfillment_type or FulfillmentType.PICKUP,
                promised_time=event.promised_time,
                raw_data=dict(event.order),
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(order)
                logger.info(
                    "Order created",
                    extra_data={
                        "store_id": event.store_id,
                        "platform_order_id": event.platform_order_id,
                        "status": order.status.value,
                    },
                )
                return OrderChange(order=order, created=True, previous_status=None, status_changed=True)
            except IntegrityError:
                # הזמנה נוצרה במקביל — ממשיכים כעדכון
                order = await self.get_order(event.store_id, event.platform_order_id)
                if order is None:
                    raise

        previous = order.status
        promised_changed, fulfillment_changed = self._merge_order_fields(order, event)
        changed = False
        if target_status is not None:
            changed = self.transition_order(order, target_status, reason=event.event_type)
        return OrderChange(
            order=order,
            created=False,
            previous_status=previous,
            status_changed=changed,
            promised_time_changed=promised_changed,
            fulfillment_changed=fulfillment_changed,
        )

    @staticmethod
    def _merge_order_fields(order: Order, event: PlatformOrderEvent) -> tuple[bool, bool]:
        """Returns (promised_time changed, fulfillment_type changed)"""
        if order.status in TERMINAL_ORDER_STATUSES:
            return False, False
        promised_changed = False
        if event.promised_time is not None and event.promised_time != order.promised_time:
            order.promised_time = event.promised_time
            promised_changed = True
        fulfillment_changed = False
        if event.fulfillment_type is not None and event.fulfillment_type != order.fulfillment_type:
            logger.info(
                "Order fulfillment type changed",
                extra_data={
                    "store_id": order.store_id,
                    "platform_order_id": order.platform_order_id,
                    "old_fulfillment": order.fulfillment_type.value,
                    "new_fulfillment": event.fulfillment_type.value,
                },
            )
            order.fulfillment_type = event.fulfillment_type
            fulfillment_changed = True
        if event.order:
            # dict חדש כדי ש-SQLAlchemy יזהה שינוי בעמודת JSON
            merged = dict(order.raw_data or {})
            merged.update(event.order)
            order.raw_data = merged
        return promised_changed, fulfillment_changed

    def transition_order(self, order: Order, target: OrderStatus, *, reason: str) -> bool:
        """
        Move the order to ``target`` if allowed.

        Returns True if the status changed. Same-status and disallowed
        moves are no-ops; disallowed ones are logged.
        """
        current = order.status
        if current == target:
            return False
        if not is_valid_order_transition(current, target):
            logger.warning(
                "Invalid order transition ignored",
                extra_data={
                    "store_id": order.store_id,
                    "platform_order_id": order.platform_order_id,
                    "current_status": current.value,
                    "target_status": target.value,
                    "reason": reason,
                },
            )
            return False
        order.status = target
        logger.info(
            "Order status changed",
            extra_data={
                "store_id": order.store_id,
                "platform_order_id": order.platform_order_id,
                "old_status": current.value,
                "new_status": target.value,
                "reason": reason,
            },
        )
        return True

    # ==================== Deliveries ====================

    async def get_delivery_for_order(self, order: Order) -> Delivery | None:
        result = await self.db.execute(select(Delivery).where(Delivery.order_id == order.id))
        return result.scalar_one_or_none()

    async def get_delivery(self, external_delivery_id: str) -> Delivery | None:
        result = await self.db.execute(
            select(Delivery).where(Delivery.external_delivery_id == external_delivery_id)
        )
        return result.scalar_one_or_none()

    async def find_delivery(self, event: CourierDeliveryEvent) -> Delivery | None:
        """Look a courier event's delivery up by our id first, then the courier's"""
        conditions = []
        if event.external_delivery_id:
            conditions.append(Delivery.external_delivery_id == event.external_delivery_id)
        if event.courier_delivery_id:
            conditions.append(Delivery.courier_delivery_id == event.courier_delivery_id)
        if not conditions:
            return None
        result = await self.db.execute(select(Delivery).where(or_(*conditions)).limit(1))
        return result.scalar_one_or_none()

    async def get_order_by_id(self, order_id: int) -> Order | None:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def ensure_delivery(self, order: Order, dispatch_due_at: datetime | None) -> DeliveryChange:
        """
        Create the order's Delivery once; later calls return the existing row.

        ``dispatch_due_at`` is only applied on creation; a changed promised
        time goes through ``reschedule_delivery``.
        """
        existing = await self.get_delivery_for_order(order)
        if existing is not None:
            return DeliveryChange(delivery=existing, created=False)

        external_id = build_external_delivery_id(order.store_id, order.platform_order_id)
        delivery = Delivery(
            order_id=order.id,
            external_delivery_id=external_id,
            status=DeliveryStatus.PENDING,
            dispatch_due_at=dispatch_due_at,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(delivery)
        except IntegrityError:
            existing = await self.get_delivery(external_id)
            if existing is None:
                raise
            return DeliveryChange(delivery=existing, created=False)

        logger.info(
            "Delivery created",
            extra_data={
                "external_delivery_id": external_id,
                "dispatch_due_at": dispatch_due_at.isoformat() if dispatch_due_at else None,
            },
        )
        return DeliveryChange(delivery=delivery, created=True)

    def reschedule_delivery(self, delivery: Delivery, dispatch_due_at: datetime) -> bool:
        """
        Move an undispatched delivery's due time.

        Only pending deliveries that were never sent (and did not fail
        dispatch) are moved. Returns True if the due time changed.
        """
        if (
            delivery.status != DeliveryStatus.PENDING
            or delivery.dispatched_at is not None
            or delivery.dispatch_failed_at is not None
            or delivery.dispatch_due_at == dispatch_due_at
        ):
            return False
        previous = delivery.dispatch_due_at
        delivery.dispatch_due_at = dispatch_due_at
        logger.info(
            "Delivery rescheduled",
            extra_data={
                "external_delivery_id": delivery.external_delivery_id,
                "old_due_at": previous.isoformat() if previous else None,
                "new_due_at": dispatch_due_at.isoformat(),
            },
        )
        return True

    def transition_delivery(self, delivery: Delivery, target: DeliveryStatus, *, reason: str) -> bool:
        current = delivery.status
        if current == target:
            return False
        if not is_valid_delivery_transition(current, target):
            logger.warning(
                "Invalid delivery transition ignored",
                extra_data={
                    "external_delivery_id": delivery.external_delivery_id,
                    "current_status": current.value,
                    "target_status": target.value,
                    "reason": reason,
                },
            )
            return False
        delivery.status = target
        logger.info(
            "Delivery status changed",
            extra_data={
                "external_delivery_id": delivery.external_delivery_id,
                "old_status": current.value,
                "new_status": target.value,
                "reason": reason,
            },
        )
        return True

    async def apply_courier_status(
        self,
        delivery: Delivery,
        target: DeliveryStatus,
        event: CourierDeliveryEvent,
    ) -> CourierChange:
        """
        Apply a courier status and back-propagate it to the order.

        The order follows the fixed lookup table whenever the delivery is
        in ``target`` after this call, so a retry after a partial failure
        still converges.
        """
        if event.courier_delivery_id and not delivery.courier_delivery_id:
            delivery.courier_delivery_id = event.courier_delivery_id
        if event.tracking_url:
            delivery.tracking_url = event.tracking_url
        if event.driver_name:
            delivery.driver_name = event.driver_name
        if event.driver_phone:
            delivery.driver_phone = event.driver_phone

        delivery_changed = self.transition_delivery(delivery, target, reason=event.event_type)

        order = await self.get_order_by_id(delivery.order_id)
        mapped = COURIER_TO_ORDER_STATUS.get(target)
        order_changed = False
        if order is not None and mapped is not None and delivery.status == target:
            order_changed = self.transition_order(order, mapped, reason=f"courier:{target.value}")

        return CourierChange(
            delivery=delivery,
            order=order,
            delivery_changed=delivery_changed,
            order_changed=order_changed,
            mapped_order_status=mapped,
        )

    @staticmethod
    def is_delivery_terminal(delivery: Delivery) -> bool:
        return delivery.status in TERMINAL_DELIVERY_STATUSES

    @staticmethod
    def is_order_terminal(order: Order) -> bool:
        return order.status in TERMINAL_ORDER_STATUSES
