"""
Order and delivery lifecycle transitions
"""
from app.db.models.delivery import DeliveryStatus
from app.db.models.order import OrderStatus


# Order: pending → confirmed → preparing → ready → out_for_delivery → delivered
# + cancelled מכל מצב שאינו סופי. מותר לדלג קדימה, אסור לחזור אחורה.
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: [
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.CONFIRMED: [
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.PREPARING: [
        OrderStatus.READY,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.READY: [
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.OUT_FOR_DELIVERY: [
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    ],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}

# Delivery: pending → accepted → picked_up → delivered, + cancelled | failed
DELIVERY_TRANSITIONS = {
    DeliveryStatus.PENDING: [
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.FAILED,
    ],
    DeliveryStatus.ACCEPTED: [
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.FAILED,
    ],
    DeliveryStatus.PICKED_UP: [
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.FAILED,
    ],
    DeliveryStatus.DELIVERED: [],
    DeliveryStatus.CANCELLED: [],
    DeliveryStatus.FAILED: [],
}

TERMINAL_ORDER_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)
TERMINAL_DELIVERY_STATUSES = frozenset(s for s, targets in DELIVERY_TRANSITIONS.items() if not targets)

# טבלת back-propagation קבועה: סטטוס שליחות → סטטוס הזמנה
COURIER_TO_ORDER_STATUS = {
    DeliveryStatus.ACCEPTED: OrderStatus.CONFIRMED,
    DeliveryStatus.PICKED_UP: OrderStatus.OUT_FOR_DELIVERY,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
    DeliveryStatus.CANCELLED: OrderStatus.CANCELLED,
    DeliveryStatus.FAILED: OrderStatus.CANCELLED,
}

# סטטוסים כפי שהפלטפורמה שולחת אותם → סטטוס פנימי
PLATFORM_STATUS_ALIASES = {
    "accepted": OrderStatus.CONFIRMED,
    "ready_for_delivery": OrderStatus.READY,
    "ready_for_pickup": OrderStatus.READY,
    "in_delivery": OrderStatus.OUT_FOR_DELIVERY,
    "completed": OrderStatus.DELIVERED,
    "canceled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.CANCELLED,
    "missed": OrderStatus.CANCELLED,
    "refunded": OrderStatus.CANCELLED,
}

# אירועי פלטפורמה שמגדירים סטטוס בעצמם
PLATFORM_EVENT_STATUS = {
    "order.created": OrderStatus.PENDING,
    "order.confirmed": OrderStatus.CONFIRMED,
    "order.preparing": OrderStatus.PREPARING,
    "order.ready_for_delivery": OrderStatus.READY,
    "order.ready": OrderStatus.READY,
    "order.cancelled": OrderStatus.CANCELLED,
    "order.delivered": OrderStatus.DELIVERED,
}

# סטטוסי DoorDash Drive ושמות אירועים → סטטוס משלוח פנימי
COURIER_STATUS_ALIASES = {
    "created": DeliveryStatus.PENDING,
    "confirmed": DeliveryStatus.ACCEPTED,
    "assigned": DeliveryStatus.ACCEPTED,
    "enroute_to_pickup": DeliveryStatus.ACCEPTED,
    "arrived_at_pickup": DeliveryStatus.ACCEPTED,
    "enroute_to_dropoff": DeliveryStatus.PICKED_UP,
    "arrived_at_dropoff": DeliveryStatus.PICKED_UP,
    "completed": DeliveryStatus.DELIVERED,
    "canceled": DeliveryStatus.CANCELLED,
    "returned": DeliveryStatus.FAILED,
    "dasher_confirmed": DeliveryStatus.ACCEPTED,
    "dasher_enroute_to_pickup": DeliveryStatus.ACCEPTED,
    "dasher_confirmed_pickup_arrival": DeliveryStatus.ACCEPTED,
    "dasher_picked_up": DeliveryStatus.PICKED_UP,
    "dasher_enroute_to_dropoff": DeliveryStatus.PICKED_UP,
    "dasher_confirmed_dropoff_arrival": DeliveryStatus.PICKED_UP,
    "dasher_dropped_off": DeliveryStatus.DELIVERED,
    "delivery_cancelled": DeliveryStatus.CANCELLED,
    "delivery_returned": DeliveryStatus.FAILED,
    "delivery.driver_assigned": DeliveryStatus.ACCEPTED,
    "delivery.completed": DeliveryStatus.DELIVERED,
}


def normalize_order_status(value: str | None) -> OrderStatus | None:
    """Platform status string → OrderStatus, None when unknown"""
    if not value:
        return None
    key = str(value).strip().lower()
    try:
        return OrderStatus(key)
    except ValueError:
        return PLATFORM_STATUS_ALIASES.get(key)


def normalize_delivery_status(value: str | None) -> DeliveryStatus | None:
    """Courier status or event name → DeliveryStatus, None when unknown"""
    if not value:
        return None
    key = str(value).strip().lower()
    try:
        return DeliveryStatus(key)
    except ValueError:
        return COURIER_STATUS_ALIASES.get(key)


def is_valid_order_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, [])


def is_valid_delivery_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in DELIVERY_TRANSITIONS.get(current, [])
