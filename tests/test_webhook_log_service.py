"""
בדיקות יומן האירועים: מעברי סטטוס, retry ידני, שאילתות וניקוי.
"""
from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.core.exceptions import EventNotFoundError, InvalidEventStateError
from app.db.models.webhook_event import EventSource, WebhookEventStatus
from app.domain.services.webhook_log_service import WebhookLogService
from app.domain.services.webhook_security import payload_content_hash


@pytest.fixture
def log(db_session) -> WebhookLogService:
    return WebhookLogService(db_session)


async def _record(log: WebhookLogService, order_id: str = "O1", **kwargs):
    return await log.record(
        kwargs.pop("source", EventSource.ORDERING_PLATFORM),
        "order.created",
        {"store_id": "S1", "order": {"id": order_id}},
        store_id="S1",
        resource_key=f"S1:{order_id}",
        **kwargs,
    )


class TestRecord:

    @pytest.mark.unit
    async def test_new_event_is_pending(self, log):
        event = await _record(log)

        assert event.id
        assert event.status == WebhookEventStatus.PENDING
        assert event.attempt_count == 0
        assert event.content_hash == payload_content_hash({"store_id": "S1", "order": {"id": "O1"}})

    @pytest.mark.unit
    async def test_content_hash_ignores_key_order(self):
        assert payload_content_hash({"a": 1, "b": {"c": 2, "d": 3}}) == payload_content_hash(
            {"b": {"d": 3, "c": 2}, "a": 1}
        )

    @pytest.mark.unit
    async def test_require_unknown_event(self, log):
        with pytest.raises(EventNotFoundError):
            await log.require("missing")


class TestStatusTransitions:

    @pytest.mark.unit
    async def test_processing_increments_attempts(self, log):
        event = await _record(log)

        await log.mark_processing(event.id)
        event = await log.mark_processing(event.id)

        assert event.status == WebhookEventStatus.PROCESSING
        assert event.attempt_count == 2

    @pytest.mark.unit
    async def test_succeeded_is_terminal(self, log):
        event = await _record(log)
        await log.mark_processing(event.id)
        await log.mark_succeeded(event.id)

        with pytest.raises(InvalidEventStateError):
            await log.mark_processing(event.id)
        with pytest.raises(InvalidEventStateError):
            await log.mark_failed(event.id, "late failure")

    @pytest.mark.unit
    async def test_mark_succeeded_is_idempotent(self, log):
        event = await _record(log)
        await log.mark_processing(event.id)
        first = await log.mark_succeeded(event.id)
        processed_at = first.processed_at

        again = await log.mark_succeeded(event.id)

        assert again.processed_at == processed_at

    @pytest.mark.unit
    async def test_failed_cannot_succeed(self, log):
        event = await _record(log)
        await log.mark_processing(event.id)
        await log.mark_failed(event.id, "boom")

        with pytest.raises(InvalidEventStateError):
            await log.mark_succeeded(event.id)

    @pytest.mark.unit
    async def test_long_error_is_truncated(self, log):
        event = await _record(log)
        await log.mark_processing(event.id)

        event = await log.mark_failed(event.id, "x" * 5000)

        assert len(event.last_error) <= 2001


class TestRequeue:

    @pytest.mark.unit
    async def test_requeue_resets_attempts_and_keeps_error(self, log):
        event = await _record(log)
        await log.mark_processing(event.id)
        await log.mark_failed(event.id, "503 from courier")

        event = await log.requeue_failed(event.id)

        assert event.status == WebhookEventStatus.PENDING
        assert event.attempt_count == 0
        assert event.processed_at is None
        assert event.last_error == "503 from courier"

    @pytest.mark.unit
    @pytest.mark.parametrize("to_status", ["pending", "processing", "succeeded"])
    async def test_only_failed_events_can_be_requeued(self, log, to_status):
        event = await _record(log)
        if to_status in ("processing", "succeeded"):
            await log.mark_processing(event.id)
        if to_status == "succeeded":
            await log.mark_succeeded(event.id)

        with pytest.raises(InvalidEventStateError):
            await log.requeue_failed(event.id)


class TestQueries:

    @pytest.mark.unit
    async def test_list_and_count_by_status(self, log):
        first = await _record(log, "O1")
        second = await _record(log, "O2")
        await _record(log, "O3", source=EventSource.COURIER)
        await log.mark_processing(first.id)
        await log.mark_failed(first.id, "boom")
        await log.mark_processing(second.id)
        await log.mark_succeeded(second.id)

        failed = await log.list_by_status(WebhookEventStatus.FAILED)
        courier = await log.list_by_status(source=EventSource.COURIER)
        counts = await log.count_by_status()

        assert [e.id for e in failed] == [first.id]
        assert len(courier) == 1
        assert counts == {"pending": 1, "processing": 0, "succeeded": 1, "failed": 1}

    @pytest.mark.unit
    async def test_find_stalled_returns_open_events_only(self, log):
        pending = await _record(log, "O1")
        processing = await _record(log, "O2")
        done = await _record(log, "O3")
        await log.mark_processing(processing.id)
        await log.mark_processing(done.id)
        await log.mark_succeeded(done.id)

        stalled = await log.find_stalled(utcnow() + timedelta(seconds=5))
        fresh = await log.find_stalled(utcnow() - timedelta(hours=1))

        assert {e.id for e in stalled} == {pending.id, processing.id}
        assert fresh == []

    @pytest.mark.unit
    async def test_has_open_event_by_resource(self, log):
        event = await _record(log, "O1")

        assert await log.has_open_event(EventSource.ORDERING_PLATFORM, "S1:O1")
        assert not await log.has_open_event(EventSource.ORDERING_PLATFORM, "S1:O2")

        await log.mark_processing(event.id)
        await log.mark_succeeded(event.id)
        assert not await log.has_open_event(EventSource.ORDERING_PLATFORM, "S1:O1")

    @pytest.mark.unit
    async def test_exists_with_hash(self, log):
        event = await _record(log, "O1")

        assert await log.exists_with_hash(EventSource.ORDERING_PLATFORM, event.content_hash)
        assert not await log.exists_with_hash(EventSource.COURIER, event.content_hash)


class TestPrune:

    @pytest.mark.unit
    async def test_prune_deletes_only_old_terminal_events(self, log):
        done = await _record(log, "O1")
        failed = await _record(log, "O2")
        open_event = await _record(log, "O3")
        for event_id in (done.id, failed.id):
            await log.mark_processing(event_id)
        await log.mark_succeeded(done.id)
        await log.mark_failed(failed.id, "boom")

        assert await log.prune_terminal(utcnow() - timedelta(days=1)) == 0

        deleted = await log.prune_terminal(utcnow() + timedelta(seconds=5))

        assert deleted == 2
        assert await log.get(done.id) is None
        assert await log.get(open_event.id) is not None
