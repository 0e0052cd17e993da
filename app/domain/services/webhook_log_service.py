"""
Webhook Log Service - יומן עמיד לאירועים נכנסים.

כל אירוע נרשם כאן לפני כל עיבוד. הסטטוסים:
    pending → processing → succeeded | failed
    failed → pending (retry ידני בלבד)

succeeded ו-failed סופיים; רק ה-Retry Executor קורא ל-mark_*.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import EventNotFoundError, InvalidEventStateError
from app.core.logging import get_logger
from app.db.models.webhook_event import (
    TERMINAL_EVENT_STATUSES,
    EventSource,
    WebhookEvent,
    WebhookEventStatus,
)
from app.domain.services.webhook_security import payload_content_hash

logger = get_logger(__name__)

OPEN_EVENT_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.PROCESSING)
_MAX_ERROR_CHARS = 2000


def _truncate_error(error: str) -> str:
    return error if len(error) <= _MAX_ERROR_CHARS else error[:_MAX_ERROR_CHARS] + "…"


class WebhookLogService:
    """Persistence for WebhookEvent rows; every mark_* commits"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        source: EventSource,
        event_type: str,
        payload: dict[str, Any],
        *,
        store_id: str | None = None,
        resource_key: str | None = None,
    ) -> WebhookEvent:
        """Durably log a new event as pending and commit"""
        event = WebhookEvent(
            source=source,
            event_type=event_type,
            store_id=store_id,
            resource_key=resource_key,
            raw_payload=payload,
            content_hash=payload_content_hash(payload),
            status=WebhookEventStatus.PENDING,
            attempt_count=0,
        )
        self.db.add(event)
        await self.db.commit()
        logger.info(
            "Webhook event recorded",
            extra_data={
                "event_id": event.id,
                "source": source.value,
                "event_type": event_type,
                "store_id": store_id,
                "resource_key": resource_key,
            },
        )
        return event

    async def get(self, event_id: str) -> WebhookEvent | None:
        result = await self.db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))
        return result.scalar_one_or_none()

    async def require(self, event_id: str) -> WebhookEvent:
        event = await self.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    # ==================== Status transitions ====================

    async def mark_processing(self, event_id: str) -> WebhookEvent:
        """
        Start one attempt: status → processing, attempt_count += 1.

        A processing event may be re-entered (stalled after a crash); a
        terminal one may not.
        """
        event = await self.require(event_id)
        if event.status in TERMINAL_EVENT_STATUSES:
            raise InvalidEventStateError(event_id, event.status.value, "pending")
        event.status = WebhookEventStatus.PROCESSING
        event.attempt_count = (event.attempt_count or 0) + 1
        await self.db.commit()
        return event

    async def record_attempt_failure(self, event_id: str, error: str) -> WebhookEvent:
        """Store a retryable failure; the event stays in processing"""
        event = await self.require(event_id)
        event.last_error = _truncate_error(error)
        await self.db.commit()
        return event

    async def mark_succeeded(self, event_id: str) -> WebhookEvent:
        event = await self.require(event_id)
        if event.status == WebhookEventStatus.SUCCEEDED:
            return event
        if event.status == WebhookEventStatus.FAILED:
            raise InvalidEventStateError(event_id, event.status.value, "processing")
        event.status = WebhookEventStatus.SUCCEEDED
        event.processed_at = utcnow()
        await self.db.commit()
        return event

    async def mark_failed(self, event_id: str, error: str) -> WebhookEvent:
        event = await self.require(event_id)
        if event.status == WebhookEventStatus.SUCCEEDED:
            raise InvalidEventStateError(event_id, event.status.value, "processing")
        event.status = WebhookEventStatus.FAILED
        event.last_error = _truncate_error(error)
        event.processed_at = utcnow()
        await self.db.commit()
        return event

    async def requeue_failed(self, event_id: str) -> WebhookEvent:
        """Manual retry: failed → pending with a fresh attempt budget"""
        event = await self.require(event_id)
        if event.status != WebhookEventStatus.FAILED:
            raise InvalidEventStateError(event_id, event.status.value, WebhookEventStatus.FAILED.value)
        event.status = WebhookEventStatus.PENDING
        event.attempt_count = 0
        event.processed_at = None
        await self.db.commit()
        logger.info(
            "Failed webhook event requeued",
            extra_data={"event_id": event_id, "last_error": event.last_error},
        )
        return event

    # ==================== Queries ====================

    async def list_by_status(
        self,
        status: WebhookEventStatus | None = None,
        *,
        source: EventSource | None = None,
        store_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        query = select(WebhookEvent)
        if status is not None:
            query = query.where(WebhookEvent.status == status)
        if source is not None:
            query = query.where(WebhookEvent.source == source)
        if store_id is not None:
            query = query.where(WebhookEvent.store_id == store_id)
        query = query.order_by(WebhookEvent.created_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookEvent.status, func.count(WebhookEvent.id)).group_by(WebhookEvent.status)
        )
        counts = {status.value: 0 for status in WebhookEventStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts

    async def find_stalled(self, older_than: datetime, limit: int = 100) -> list[WebhookEvent]:
        """Open events not touched since ``older_than`` (lost to a crash or restart)"""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status.in_(OPEN_EVENT_STATUSES),
                WebhookEvent.updated_at < older_than,
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def has_succeeded_duplicate(self, event: WebhookEvent) -> bool:
        """Same source and identical payload already applied under another id"""
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.source == event.source,
                WebhookEvent.content_hash == event.content_hash,
                WebhookEvent.status == WebhookEventStatus.SUCCEEDED,
                WebhookEvent.id != event.id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def exists_with_hash(self, source: EventSource, content_hash: str) -> bool:
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(WebhookEvent.source == source, WebhookEvent.content_hash == content_hash)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def has_open_event(self, source: EventSource, resource_key: str) -> bool:
        result = await self.db.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.source == source,
                WebhookEvent.resource_key == resource_key,
                WebhookEvent.status.in_(OPEN_EVENT_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def prune_terminal(self, older_than: datetime) -> int:
        """Delete succeeded/failed events created before ``older_than``"""
        result = await self.db.execute(
            delete(WebhookEvent).where(
                WebhookEvent.status.in_(TERMINAL_EVENT_STATUSES),
                WebhookEvent.created_at < older_than,
            )
        )
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(
                "Old webhook events pruned",
                extra_data={"deleted": deleted, "older_than": older_than.isoformat()},
            )
        return deleted
