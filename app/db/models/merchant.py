"""
Merchant Model - רישום tenants (חנויות בפלטפורמת ההזמנות).

credentials נשמרים מוצפנים (AES-256-GCM). encryption_key_ref = NULL
מסמן רשומת legacy בטקסט גלוי, שמוצפנת בקריאה הראשונה.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from app.core.clock import utcnow
from app.db.database import Base


class Merchant(Base):
    """Tenant record: store identity, encrypted credentials, capabilities"""

    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String(100), unique=True, nullable=False, index=True)
    merchant_name = Column(String(255), nullable=True)

    # JSON של {api_key, api_url, master_key, webhook_secret}, מוצפן או legacy
    credentials = Column(Text, nullable=False)
    encryption_key_ref = Column(String(50), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # יכולות tenant
    requires_signature = Column(Boolean, default=False, nullable=False)
    auto_dispatch_enabled = Column(Boolean, default=True, nullable=False)

    # פרטי איסוף לשליח
    pickup_address = Column(String(500), nullable=True)
    pickup_phone = Column(String(30), nullable=True)
    pickup_business_name = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_encrypted(self) -> bool:
        return self.encryption_key_ref is not None
