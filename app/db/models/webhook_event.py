"""
Webhook Event Model - יומן אמינות לכל אירוע נכנס.

כל webhook נרשם כאן בסטטוס pending לפני כל עיבוד, כך שקריסה אחרי
הקבלה עדיין משאירה רשומה שאפשר לשחזר. רק ה-Retry Executor משנה סטטוס;
המעבר היחיד אחורה הוא failed → pending ב-retry ידני.
"""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text, Index

from app.core.clock import utcnow
from app.db.database import Base


def generate_event_id() -> str:
    return str(uuid.uuid4())


class EventSource(str, enum.Enum):
    ORDERING_PLATFORM = "ordering_platform"
    COURIER = "courier"
    # טריגר dispatch פנימי — נרשם כמו webhook כדי לעבור באותו מסלול retry
    DISPATCH_SCHEDULER = "dispatch_scheduler"


class WebhookEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_EVENT_STATUSES = (WebhookEventStatus.SUCCEEDED, WebhookEventStatus.FAILED)


class WebhookEvent(Base):
    """Inbound event with processing status and attempt tracking"""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_event_id)
    source = Column(SQLEnum(EventSource), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)

    # tenant + מפתח המשאב (הזמנה / משלוח) — לסינון ולבדיקת dispatch פתוח
    store_id = Column(String(100), nullable=True, index=True)
    resource_key = Column(String(255), nullable=True, index=True)

    raw_payload = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)

    status = Column(SQLEnum(WebhookEventStatus), default=WebhookEventStatus.PENDING, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
        Index("ix_webhook_events_source_hash", "source", "content_hash"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EVENT_STATUSES
