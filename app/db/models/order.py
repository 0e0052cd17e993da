"""
Order Model - הזמנה מפלטפורמת ההזמנות.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class FulfillmentType(str, enum.Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class Order(Base):
    """Platform order, unique per (store_id, platform_order_id)"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String(100), ForeignKey("merchants.store_id"), nullable=False, index=True)
    platform_order_id = Column(String(100), nullable=False)

    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    fulfillment_type = Column(SQLEnum(FulfillmentType), default=FulfillmentType.PICKUP, nullable=False)
    promised_time = Column(DateTime, nullable=True)

    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    delivery = relationship("Delivery", back_populates="order", uselist=False)

    __table_args__ = (
        UniqueConstraint("store_id", "platform_order_id", name="uq_orders_store_platform_order"),
    )
