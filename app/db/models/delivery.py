"""
Delivery Model - בקשת משלוח ברשת השליחויות, אחת לכל הזמנה.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.database import Base


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


def _escape_id_part(value: str) -> str:
    # '%' קודם, כדי ש-'%2D' שהגיע מה-id עצמו לא יתנגש עם '-' מקודד
    return value.replace("%", "%25").replace("-", "%2D")


def build_external_delivery_id(store_id: str, platform_order_id: str) -> str:
    """
    מפתח idempotency מול השליחויות — נגזר ממפתח ההזמנה.

    '-' מפריד בין החלקים, ולכן '-' ו-'%' בתוך id מקודדים: ("a-b", "c")
    ו-("a", "b-c") מקבלים מפתחות שונים. ids בלי התווים האלה נשארים "S1-O1".
    """
    return f"{_escape_id_part(store_id)}-{_escape_id_part(platform_order_id)}"


class Delivery(Base):
    """Courier delivery request"""

    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    external_delivery_id = Column(String(255), unique=True, nullable=False, index=True)
    courier_delivery_id = Column(String(255), nullable=True, index=True)

    status = Column(SQLEnum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False, index=True)

    # תזמון dispatch — NULL = לא מתוזמן (auto-dispatch כבוי)
    dispatch_due_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    dispatch_failed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    # פרטים מהשליחויות
    tracking_url = Column(String(500), nullable=True)
    driver_name = Column(String(255), nullable=True)
    driver_phone = Column(String(30), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="delivery")

    __table_args__ = (
        Index("ix_deliveries_dispatch_due", "dispatched_at", "dispatch_due_at"),
    )
