"""
State Machine Module for Order and Delivery Lifecycles
"""
from app.state_machine.states import (
    COURIER_TO_ORDER_STATUS,
    normalize_delivery_status,
    normalize_order_status,
)
from app.state_machine.manager import OrderStateMachine

__all__ = [
    "COURIER_TO_ORDER_STATUS",
    "normalize_delivery_status",
    "normalize_order_status",
    "OrderStateMachine",
]
