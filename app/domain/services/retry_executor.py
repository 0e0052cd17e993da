"""
Retry Executor - מריץ handler על אירוע רשום עם backoff מוגבל.

ההחלטה היחידה על retry באירוע נמצאת כאן:
- שגיאה retryable → רישום הכשלון, המתנה לפי RetryPolicy, ניסיון נוסף
- שגיאה terminal → failed מיד, בלי ניסיונות נוספים
- DuplicateEvent → הצלחה (האירוע כבר הוחל)
- מיצוי ניסיונות → failed + התראה ל-operator
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, system_clock
from app.core.exceptions import DuplicateEvent, InvalidEventStateError
from app.core.logging import event_context, get_logger
from app.core.retry import RetryPolicy, is_retryable
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.events import LoggedEvent
from app.domain.services.webhook_log_service import WebhookLogService

logger = get_logger(__name__)

EventHandler = Callable[[LoggedEvent], Awaitable[None]]
FailureHook = Callable[[WebhookEvent, str], Awaitable[None]]


@dataclass
class ExecutionOutcome:
    event_id: str
    status: WebhookEventStatus
    attempts: int
    error: str | None = None
    duplicate: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == WebhookEventStatus.SUCCEEDED


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def to_logged_event(event: WebhookEvent) -> LoggedEvent:
    return LoggedEvent(
        id=event.id,
        source=event.source.value,
        event_type=event.event_type,
        payload=dict(event.raw_payload or {}),
        store_id=event.store_id,
        resource_key=event.resource_key,
        attempt=event.attempt_count,
    )


class RetryExecutor:
    """Runs one logged event to a terminal status"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: RetryPolicy,
        *,
        clock: Clock = system_clock,
        on_failed: FailureHook | None = None,
    ):
        self.session_factory = session_factory
        self.policy = policy
        self.clock = clock
        self.on_failed = on_failed

    async def execute(self, event_id: str, handler: EventHandler) -> ExecutionOutcome:
        """
        Process a pending (or stalled processing) event until it is terminal.

        Succeeded events are a no-op. Failed events must be requeued
        explicitly first. Errors from the log itself propagate: the event
        then stays open and the stalled-event replay picks it up.
        """
        with event_context(event_id):
            async with self.session_factory() as db:
                log = WebhookLogService(db)
                event = await log.require(event_id)

                if event.status == WebhookEventStatus.SUCCEEDED:
                    logger.debug("Event already succeeded, skipping")
                    return ExecutionOutcome(event_id, event.status, event.attempt_count)
                if event.status == WebhookEventStatus.FAILED:
                    raise InvalidEventStateError(event_id, event.status.value, WebhookEventStatus.PENDING.value)

                if event.attempt_count == 0 and await log.has_succeeded_duplicate(event):
                    await log.mark_processing(event_id)
                    event = await log.mark_succeeded(event_id)
                    logger.info("Duplicate payload already applied, marked succeeded")
                    return ExecutionOutcome(event_id, event.status, event.attempt_count, duplicate=True)

                return await self._run_attempts(log, event_id, handler)

    async def _run_attempts(
        self,
        log: WebhookLogService,
        event_id: str,
        handler: EventHandler,
    ) -> ExecutionOutcome:
        while True:
            event = await log.mark_processing(event_id)
            attempt = event.attempt_count

            try:
                await handler(to_logged_event(event))
            except DuplicateEvent as dup:
                event = await log.mark_succeeded(event_id)
                logger.info("Handler reported duplicate event", extra_data={"reason": dup.message})
                return ExecutionOutcome(event_id, event.status, attempt, duplicate=True)
            except Exception as exc:
                error = describe_error(exc)
                retryable = is_retryable(exc)

                if not retryable or attempt >= self.policy.max_attempts:
                    return await self._fail(log, event_id, error, attempt, retryable=retryable, exc=exc)

                delay = self.policy.delay_for(attempt)
                await log.record_attempt_failure(event_id, error)
                logger.warning(
                    "Event attempt failed, retrying",
                    extra_data={
                        "attempt": attempt,
                        "max_attempts": self.policy.max_attempts,
                        "delay_seconds": delay,
                        "error": error,
                    },
                )
                await self.clock.sleep(delay)
                continue

            event = await log.mark_succeeded(event_id)
            logger.info(
                "Event processed",
                extra_data={"event_type": event.event_type, "attempt": attempt},
            )
            return ExecutionOutcome(event_id, event.status, attempt)

    async def _fail(
        self,
        log: WebhookLogService,
        event_id: str,
        error: str,
        attempt: int,
        *,
        retryable: bool,
        exc: BaseException,
    ) -> ExecutionOutcome:
        event = await log.mark_failed(event_id, error)
        # התראה ל-operator — נאסף ע"י /api/alerts ומערכת הניטור
        logger.error(
            "ALERT: webhook event failed permanently",
            extra_data={
                "alert": True,
                "source": event.source.value,
                "event_type": event.event_type,
                "store_id": event.store_id,
                "resource_key": event.resource_key,
                "attempts": attempt,
                "reason": "retries_exhausted" if retryable else "terminal_error",
                "error": error,
            },
            exc_info=(type(exc), exc, exc.__traceback__) if not retryable else None,
        )

        if self.on_failed is not None:
            try:
                await self.on_failed(event, error)
            except Exception:
                logger.error("Failure hook raised", exc_info=True)

        return ExecutionOutcome(event_id, event.status, attempt, error=error)
