"""
Dispatch Engine - חיבור כל רכיבי המנוע מתוך אובייקט Settings אחד.

אין singletons: ה-engine נבנה פעם אחת בהפעלה (FastAPI lifespan או
Celery task) ומחזיק את ה-clients, ה-circuit breakers, ה-scheduler
וה-worker pool. בדיקות בונות engine משלהן עם clock ו-transports מזויפים.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.clock import Clock, system_clock
from app.core.config import Settings
from app.core.encryption import CredentialCipher
from app.core.exceptions import (
    AppException,
    DeliveryNotFoundError,
    MalformedPayload,
    OrderNotFoundError,
    PersistenceUnavailableError,
)
from app.core.keyed_lock import KeyedLock
from app.core.logging import get_logger, log_async_operation
from app.core.retry import RetryPolicy
from app.db.models.webhook_event import EventSource, WebhookEvent
from app.domain.services.dispatch_scheduler import DispatchScheduler
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.merchant_notification_service import MerchantNotificationService, SmtpConfig
from app.domain.services.merchant_registry import MerchantRegistry
from app.domain.services.order_source import OrderSource, PlatformApiOrderSource
from app.domain.services.outbound.base import (
    FixedWindowRateLimiter,
    RateLimitedClient,
    counts_against_upstream,
)
from app.domain.services.outbound.courier import CourierClient, DoorDashJwtAuth
from app.domain.services.outbound.ordering_platform import OrderingPlatformClient
from app.domain.services.retry_executor import ExecutionOutcome, RetryExecutor
from app.domain.services.webhook_log_service import WebhookLogService
from app.domain.services.webhook_processor import WebhookProcessor
from app.domain.services.webhook_security import WebhookSecurityValidator, payload_content_hash
from app.domain.services.worker_pool import EventWorkerPool
from app.state_machine.manager import OrderStateMachine

logger = get_logger(__name__)

PLATFORM_SERVICE = "ordering_platform"
COURIER_SERVICE = "courier"
POLLED_EVENT_TYPE = "order.polled"


def platform_resource_key(store_id: str, platform_order_id: str) -> str:
    return f"{store_id}:{platform_order_id}"


class DispatchEngine:
    """Owns every long-lived component of the order dispatch pipeline"""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = system_clock,
        platform_transport: httpx.AsyncBaseTransport | None = None,
        courier_transport: httpx.AsyncBaseTransport | None = None,
        order_source: OrderSource | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.processing_mode = settings.WEBHOOK_PROCESSING_MODE

        self.cipher = (
            CredentialCipher(
                settings.ENCRYPTION_MASTER_KEY,
                key_id=settings.ENCRYPTION_KEY_ID,
                iterations=settings.ENCRYPTION_KDF_ITERATIONS,
            )
            if settings.ENCRYPTION_MASTER_KEY
            else None
        )
        self.validator = WebhookSecurityValidator()
        self.locks = KeyedLock()
        self.retry_policy = RetryPolicy.from_settings(settings)

        # circuit breaker לכל יעד — counts_against_upstream מתעלם מ-4xx
        self.circuit_breakers: dict[str, CircuitBreaker] = {
            PLATFORM_SERVICE: CircuitBreaker(
                PLATFORM_SERVICE,
                CircuitBreakerConfig(failure_threshold=5, timeout_seconds=60.0),
                counts_as_failure=counts_against_upstream,
            ),
            COURIER_SERVICE: CircuitBreaker(
                COURIER_SERVICE,
                CircuitBreakerConfig(failure_threshold=5, timeout_seconds=30.0),
                counts_as_failure=counts_against_upstream,
            ),
        }

        self.platform_client = OrderingPlatformClient(
            RateLimitedClient(
                service_name=PLATFORM_SERVICE,
                base_url=settings.PLATFORM_API_URL,
                rate_limiter=FixedWindowRateLimiter(settings.PLATFORM_REQUESTS_PER_MINUTE, clock=clock),
                circuit_breaker=self.circuit_breakers[PLATFORM_SERVICE],
                retry_policy=RetryPolicy.from_settings(settings, max_attempts=settings.PLATFORM_MAX_ATTEMPTS),
                timeout_seconds=settings.PLATFORM_TIMEOUT_SECONDS,
                clock=clock,
                transport=platform_transport,
            )
        )
        self.courier_auth = DoorDashJwtAuth(
            settings.DOORDASH_DEVELOPER_ID,
            settings.DOORDASH_KEY_ID,
            settings.DOORDASH_SIGNING_SECRET,
            clock=clock,
        )
        self.courier_client = CourierClient(
            RateLimitedClient(
                service_name=COURIER_SERVICE,
                base_url=settings.DOORDASH_API_URL,
                rate_limiter=FixedWindowRateLimiter(settings.COURIER_REQUESTS_PER_MINUTE, clock=clock),
                circuit_breaker=self.circuit_breakers[COURIER_SERVICE],
                retry_policy=RetryPolicy.from_settings(settings, max_attempts=settings.COURIER_MAX_ATTEMPTS),
                timeout_seconds=settings.COURIER_TIMEOUT_SECONDS,
                clock=clock,
                transport=courier_transport,
            ),
            self.courier_auth,
        )
        self.order_source = order_source or PlatformApiOrderSource(
            self.platform_client, max_attempts=settings.ORDER_POLLING_MAX_ATTEMPTS
        )
        self.notifier = MerchantNotificationService(SmtpConfig.from_settings(settings))

        self.executor = RetryExecutor(
            session_factory,
            self.retry_policy,
            clock=clock,
            on_failed=self._on_event_failed,
        )
        self.dispatch_service = DispatchService(
            session_factory,
            self.cipher,
            self.courier_client,
            self.locks,
            clock=clock,
        )
        self.scheduler = DispatchScheduler(
            session_factory,
            self.executor,
            self.dispatch_service.dispatch,
            clock=clock,
            scan_interval_seconds=settings.DISPATCH_SCAN_INTERVAL_SECONDS,
            horizon_seconds=settings.DISPATCH_SCHEDULING_HORIZON_SECONDS,
        )
        self.processor = WebhookProcessor(
            session_factory,
            self.cipher,
            self.locks,
            self.scheduler,
            self.courier_client,
            self.platform_client,
            lead_buffer=timedelta(minutes=settings.DISPATCH_LEAD_MINUTES),
            status_sync_enabled=settings.PLATFORM_STATUS_SYNC_ENABLED,
            clock=clock,
            validator=self.validator,
            notifier=self.notifier,
        )
        self.worker_pool = EventWorkerPool(
            self.process_event,
            concurrency=settings.WEBHOOK_WORKER_CONCURRENCY,
        )
        self._handlers = {
            EventSource.ORDERING_PLATFORM: self.processor.handle_platform_event,
            EventSource.COURIER: self.processor.handle_courier_event,
            EventSource.DISPATCH_SCHEDULER: self.dispatch_service.dispatch,
        }

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        if self.processing_mode == "queued":
            self.worker_pool.start()
        if self.settings.DISPATCH_SCHEDULER_ENABLED:
            await self.scheduler.start()
        logger.info(
            "Dispatch engine started",
            extra_data={
                "processing_mode": self.processing_mode,
                "scheduler_enabled": self.settings.DISPATCH_SCHEDULER_ENABLED,
                "encryption_enabled": self.cipher is not None,
            },
        )

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.worker_pool.stop()
        await self.platform_client.http.aclose()
        await self.courier_client.http.aclose()
        logger.info("Dispatch engine stopped")

    async def load_merchants(self) -> int:
        """Bootstrap tenants from MERCHANTS_JSON"""
        if not self.settings.MERCHANTS_JSON:
            return 0
        async with self.session_factory() as db:
            loaded = await MerchantRegistry(db, self.cipher).load_from_json(self.settings.MERCHANTS_JSON)
        logger.info("Merchants loaded from settings", extra_data={"count": loaded})
        return loaded

    # ==================== Ingestion ====================

    async def _record(
        self,
        source: EventSource,
        items: list[tuple[str, dict[str, Any], str | None, str | None]],
    ) -> list[str]:
        """Durably log events; failure here fails the inbound request"""
        try:
            async with self.session_factory() as db:
                log = WebhookLogService(db)
                ids = []
                for event_type, payload, store_id, resource_key in items:
                    event = await log.record(
                        source, event_type, payload, store_id=store_id, resource_key=resource_key
                    )
                    ids.append(event.id)
                return ids
        except SQLAlchemyError as e:
            logger.critical(
                "Event log unavailable, inbound webhook rejected",
                extra_data={"source": source.value, "error": str(e)},
            )
            raise PersistenceUnavailableError() from e

    async def ingest_platform_webhook(self, body: bytes, headers: Mapping[str, str]) -> list[str]:
        """
        Validate, authenticate and log an ordering-platform webhook.

        Returns the logged event ids (one per order in the request). Unknown
        tenants are logged too; their events then fail as TenantNotFound.
        """
        payloads = self.validator.split_platform_body(body)
        events = [self.validator.parse_platform_payload(p) for p in payloads]
        store_ids = {e.store_id for e in events}
        if len(store_ids) != 1:
            raise MalformedPayload("A webhook request must belong to a single store", field="store_id")
        store_id = store_ids.pop()

        try:
            async with self.session_factory() as db:
                profile = await MerchantRegistry(db, self.cipher).get_profile(store_id)
        except SQLAlchemyError as e:
            raise PersistenceUnavailableError() from e

        self.validator.verify_signature(
            body,
            headers,
            profile.credentials.webhook_secret if profile else None,
            requires_signature=profile.requires_signature if profile else False,
            tenant=store_id,
        )

        ids = await self._record(
            EventSource.ORDERING_PLATFORM,
            [
                (
                    event.event_type,
                    payload,
                    event.store_id,
                    platform_resource_key(event.store_id, event.platform_order_id),
                )
                for event, payload in zip(events, payloads)
            ],
        )
        await self.submit(ids)
        return ids

    async def ingest_courier_webhook(self, body: bytes, headers: Mapping[str, str]) -> str:
        self.validator.verify_courier_signature(body, headers, self.settings.COURIER_WEBHOOK_SECRET or None)
        payload = self.validator.parse_courier_body(body)
        event = self.validator.parse_courier_payload(payload)
        ids = await self._record(
            EventSource.COURIER,
            [(event.event_type, payload, None, event.lookup_key)],
        )
        await self.submit(ids)
        return ids[0]

    # ==================== Processing ====================

    async def submit(self, event_ids: list[str]) -> None:
        """Hand logged events to the worker pool, or process them now"""
        if self.processing_mode == "queued" and self.worker_pool.running:
            for event_id in event_ids:
                self.worker_pool.enqueue(event_id)
            return
        for event_id in event_ids:
            try:
                await self.process_event(event_id)
            except Exception:
                # האירוע רשום ונשאר פתוח; replay_stalled ימשיך אותו
                logger.error(
                    "Inline event processing failed",
                    extra_data={"event_id": event_id},
                    exc_info=True,
                )

    async def process_event(self, event_id: str) -> ExecutionOutcome:
        async with self.session_factory() as db:
            event = await WebhookLogService(db).require(event_id)
            source = event.source
        return await self.executor.execute(event_id, self._handlers[source])

    async def _on_event_failed(self, event: WebhookEvent, error: str) -> None:
        if event.source == EventSource.DISPATCH_SCHEDULER and event.resource_key:
            await self.dispatch_service.record_failure(event.resource_key, error)

    def _credentials_loader(self, store_id: str):
        """Re-reads a tenant's credentials from the registry (used on a 401)"""

        async def reload():
            async with self.session_factory() as db:
                return (await MerchantRegistry(db, self.cipher).resolve(store_id)).credentials

        return reload

    # ==================== Operations ====================

    async def retry_failed_event(self, event_id: str) -> WebhookEvent:
        """Manual retry: failed → pending, then process"""
        async with self.session_factory() as db:
            event = await WebhookLogService(db).requeue_failed(event_id)
        if event.source == EventSource.DISPATCH_SCHEDULER and event.resource_key:
            await self.dispatch_service.clear_failure(event.resource_key)
        await self.submit([event_id])
        async with self.session_factory() as db:
            return await WebhookLogService(db).require(event_id)

    async def dispatch_now(self, store_id: str, platform_order_id: str) -> ExecutionOutcome | None:
        """Fire a delivery's dispatch immediately (manual dispatch or after a failure)"""
        async with self.session_factory() as db:
            machine = OrderStateMachine(db)
            order = await machine.get_order(store_id, platform_order_id)
            if order is None:
                raise OrderNotFoundError(platform_resource_key(store_id, platform_order_id))
            delivery = await machine.get_delivery_for_order(order)
            if delivery is None:
                raise DeliveryNotFoundError(platform_resource_key(store_id, platform_order_id))
            external_id = delivery.external_delivery_id

        await self.dispatch_service.clear_failure(external_id)
        self.scheduler.cancel(external_id)
        logger.info("Manual dispatch requested", extra_data={"external_delivery_id": external_id})
        return await self.scheduler.fire(external_id)

    async def replay_stalled(self, limit: int = 100) -> int:
        """Re-run open events untouched for WEBHOOK_STALLED_AFTER_SECONDS"""
        cutoff = self.clock.now() - timedelta(seconds=self.settings.WEBHOOK_STALLED_AFTER_SECONDS)
        async with self.session_factory() as db:
            stalled = await WebhookLogService(db).find_stalled(cutoff, limit=limit)
            ids = [event.id for event in stalled]
        if ids:
            logger.warning("Replaying stalled webhook events", extra_data={"count": len(ids)})
            await self.submit(ids)
        return len(ids)

    @log_async_operation("prune_webhook_events")
    async def prune_events(self) -> int:
        cutoff = self.clock.now() - timedelta(days=self.settings.WEBHOOK_EVENT_RETENTION_DAYS)
        async with self.session_factory() as db:
            return await WebhookLogService(db).prune_terminal(cutoff)

    @log_async_operation("poll_orders")
    async def poll_orders(self, since: datetime | None = None) -> int:
        """
        Fetch recent orders of every active tenant and log the unseen ones.

        Polled orders go through the same log/executor path as webhooks;
        a payload already logged (same content) is not logged again.
        """
        if since is None:
            since = self.clock.now() - timedelta(minutes=self.settings.ORDER_POLLING_LOOKBACK_MINUTES)
        async with self.session_factory() as db:
            registry = MerchantRegistry(db, self.cipher)
            store_ids = [m.store_id for m in await registry.list_active()]

        recorded: list[str] = []
        for store_id in store_ids:
            try:
                async with self.session_factory() as db:
                    profile = await MerchantRegistry(db, self.cipher).resolve(store_id)
                orders = await self.order_source.fetch_orders(
                    profile, since, reload=self._credentials_loader(store_id)
                )
            except AppException as e:
                # tenant אחד שנכשל לא עוצר את השאר
                logger.error(
                    "Order polling failed for tenant",
                    extra_data={"store_id": store_id, "error": e.message},
                )
                continue

            items = []
            async with self.session_factory() as db:
                log = WebhookLogService(db)
                for order in orders:
                    payload = {"event_type": POLLED_EVENT_TYPE, "store_id": store_id, "order": order}
                    try:
                        event = self.validator.parse_platform_payload(payload)
                    except MalformedPayload as e:
                        logger.warning(
                            "Polled order skipped",
                            extra_data={"store_id": store_id, "error": e.message},
                        )
                        continue
                    if await log.exists_with_hash(EventSource.ORDERING_PLATFORM, payload_content_hash(payload)):
                        continue
                    items.append((
                        POLLED_EVENT_TYPE,
                        payload,
                        store_id,
                        platform_resource_key(store_id, event.platform_order_id),
                    ))
            if items:
                recorded.extend(await self._record(EventSource.ORDERING_PLATFORM, items))

        if recorded:
            logger.info("Polled orders logged", extra_data={"count": len(recorded)})
            await self.submit(recorded)
        return len(recorded)

    def circuit_breaker_status(self) -> dict[str, dict]:
        return {name: breaker.snapshot() for name, breaker in self.circuit_breakers.items()}
