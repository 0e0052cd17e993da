"""
Database Models
"""
from app.db.models.merchant import Merchant
from app.db.models.order import Order
from app.db.models.delivery import Delivery
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "Merchant",
    "Order",
    "Delivery",
    "WebhookEvent",
]
