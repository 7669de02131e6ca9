"""End-to-end tests for the pipeline orchestrator on in-memory collaborators."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from core.enums import ChannelType, NotificationPriority, NotificationStatus
from core.notifications.bus import (
    NOTIFICATIONS_DLQ,
    NOTIFICATIONS_RECEIPTS,
    NOTIFICATIONS_SCHEDULED,
)
from core.notifications.errors import (
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    TransientDeliveryError,
    ValidationError,
)
from core.notifications.models import ChannelPreference, QuietHours, UserPreference, utcnow
from core.notifications.orchestrator import NotificationPipeline
from core.notifications.preferences import InMemoryPreferenceSource
from core.notifications.store import NotificationFilter

NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def pipeline(store, preferences, bus, adapters, settings):
    return NotificationPipeline(store, preferences, bus, adapters, settings)


def request(**overrides):
    payload = {"user_id": "user-1", "channel": "email", "body": "Your order has shipped"}
    payload.update(overrides)
    return payload


class TestIngest:
    @pytest.mark.asyncio
    async def test_deliverable_notification_published(self, pipeline, bus):
        n = await pipeline.ingest(request(), now=NOW)

        assert n.status == NotificationStatus.processing
        assert n.content_hash
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == [{"notification_id": n.id}]

    @pytest.mark.asyncio
    async def test_invalid_request_raises_before_store_write(self, pipeline, store):
        with pytest.raises(ValidationError) as exc_info:
            await pipeline.ingest({"user_id": "user-1", "channel": "fax"}, now=NOW)

        fields = {e["field"] for e in exc_info.value.errors}
        assert "channel" in fields
        assert await store.find(NotificationFilter()) == []

    @pytest.mark.asyncio
    async def test_unknown_user_raises_not_found(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.ingest(request(user_id="nobody"), now=NOW)

    @pytest.mark.asyncio
    async def test_renders_template(self, pipeline):
        n = await pipeline.ingest(
            request(body=None, template_id="order_shipped",
                    template_data={"order_id": "A-17", "eta": "Friday"}),
            now=NOW,
        )

        assert n.title == "Your order is on its way"
        assert n.body == "Order A-17 has shipped and should arrive by Friday."

    @pytest.mark.asyncio
    async def test_unknown_template_is_validation_error(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.ingest(request(body=None, template_id="nope"), now=NOW)

    @pytest.mark.asyncio
    async def test_message_alias_for_body(self, pipeline):
        n = await pipeline.ingest(request(body=None, message="Hello there"), now=NOW)
        assert n.body == "Hello there"

    @pytest.mark.asyncio
    async def test_duplicates_within_window_cancelled(self, pipeline, store):
        first = await pipeline.ingest(request(), now=NOW)
        second = await pipeline.ingest(request(), now=NOW + timedelta(minutes=10))
        third = await pipeline.ingest(request(), now=NOW + timedelta(hours=2))

        assert first.status != NotificationStatus.cancelled
        assert second.status == NotificationStatus.cancelled
        assert second.failure_reason == "duplicate"
        assert third.status != NotificationStatus.cancelled
        assert (await store.find_by_id(second.id)).status == NotificationStatus.cancelled

    @pytest.mark.asyncio
    async def test_urgent_on_disabled_channel_fails_without_attempts(self, store, bus, adapters, settings):
        prefs = UserPreference(
            user_id="user-1", channels={ChannelType.email: ChannelPreference(enabled=False)}
        )
        pipeline = NotificationPipeline(
            store, InMemoryPreferenceSource([prefs]), bus, adapters, settings
        )

        n = await pipeline.ingest(request(priority="urgent"), now=NOW)

        assert n.status == NotificationStatus.failed
        assert n.failure_reason == "channel disabled"
        assert n.delivery_attempts == []
        assert adapters[ChannelType.email].calls == 0

    @pytest.mark.asyncio
    async def test_medium_sms_in_quiet_hours_scheduled_for_end(self, store, bus, adapters, settings):
        prefs = UserPreference(
            user_id="user-1",
            channels={
                ChannelType.sms: ChannelPreference(
                    quiet_hours=QuietHours(start="22:00", end="07:00"), address="+15550100"
                )
            },
        )
        pipeline = NotificationPipeline(
            store, InMemoryPreferenceSource([prefs]), bus, adapters, settings
        )

        n = await pipeline.ingest(
            request(channel="sms"), now=datetime(2024, 6, 12, 23, 30, tzinfo=timezone.utc)
        )

        assert n.status == NotificationStatus.scheduled
        assert n.scheduled_for == datetime(2024, 6, 13, 7, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_future_send_time_scheduled_without_policy(self, pipeline, bus):
        send_at = NOW + timedelta(days=1)

        n = await pipeline.ingest(request(scheduled_for=send_at.isoformat()), now=NOW)

        assert n.status == NotificationStatus.scheduled
        assert n.scheduled_for == send_at
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == []

    @pytest.mark.asyncio
    async def test_low_priority_goes_to_aggregator(self, pipeline):
        n = await pipeline.ingest(request(priority="low"), now=NOW)

        assert n.status == NotificationStatus.queued
        assert pipeline.aggregator.pending_count() == 1

    @pytest.mark.asyncio
    async def test_routing_failure_queues_record_for_scheduler(self, pipeline, bus, store):
        with patch.object(
            pipeline.policy, "evaluate", AsyncMock(side_effect=InfrastructureError("db down"))
        ):
            n = await pipeline.ingest(request(), now=NOW)

        assert n.status == NotificationStatus.queued
        assert n.scheduled_for == NOW

        retry = await pipeline.ingest(request(), now=NOW + timedelta(seconds=5))
        assert retry.status == NotificationStatus.cancelled

        results = await pipeline.scheduler.tick(NOW + timedelta(minutes=1))
        assert results["delivered"] == 1
        assert (await store.find_by_id(n.id)).status == NotificationStatus.processing
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == [{"notification_id": n.id}]

    @pytest.mark.asyncio
    async def test_publish_failure_queues_record_for_scheduler(self, pipeline, bus):
        with patch.object(bus, "publish", AsyncMock(side_effect=InfrastructureError("bus down"))):
            n = await pipeline.ingest(request(), now=NOW)

        assert n.status == NotificationStatus.queued
        assert n.scheduled_for == NOW

    @pytest.mark.asyncio
    async def test_routing_failure_with_store_down_raises(self, pipeline, store):
        with patch.object(
            pipeline.policy, "evaluate", AsyncMock(side_effect=InfrastructureError("db down"))
        ), patch.object(
            store, "update_status", AsyncMock(side_effect=InfrastructureError("db down"))
        ):
            with pytest.raises(InfrastructureError):
                await pipeline.ingest(request(), now=NOW)


class TestRunningPipeline:
    @pytest.mark.asyncio
    async def test_ingest_to_sent(self, pipeline, bus, store, adapters):
        await pipeline.start()
        try:
            n = await pipeline.ingest(request())
            await bus.join()

            found = await store.find_by_id(n.id)
            assert found.status == NotificationStatus.sent
            assert adapters[ChannelType.email].sent[0]["address"] == "alice@example.com"
        finally:
            await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_submit_ingests_from_topic(self, pipeline, bus, store):
        await pipeline.start()
        try:
            await pipeline.submit(request(body="Queued through the bus"))
            await bus.join()

            [n] = await pipeline.list_for_user("user-1")
            assert n.body == "Queued through the bus"
            assert n.status == NotificationStatus.sent
        finally:
            await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_three_low_priority_become_one_digest(self, pipeline, bus, store, adapters):
        await pipeline.start()
        try:
            originals = [
                await pipeline.ingest(request(priority="low", body=f"Update {i}"))
                for i in range(3)
            ]
            await pipeline.aggregator.sweep(utcnow() + timedelta(hours=1))
            await bus.join()

            sent = adapters[ChannelType.email].sent
            assert len(sent) == 1
            assert sent[0]["content"].title == "You have 3 new notifications"
            for n in originals:
                assert (await store.find_by_id(n.id)).status == NotificationStatus.aggregated
        finally:
            await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_always_failing_adapter_fails_after_max_retries(
        self, pipeline, bus, store, adapters, settings
    ):
        adapter = adapters[ChannelType.email]
        adapter.error = TransientDeliveryError("gateway down")
        await pipeline.start()
        try:
            n = await pipeline.ingest(request(priority="high"))
            await bus.join()
            for _ in range(settings.max_retries + 2):
                await pipeline.scheduler.tick(utcnow() + timedelta(minutes=10))
                await bus.join()

            found = await store.find_by_id(n.id)
            assert found.status == NotificationStatus.failed
            assert adapter.calls == settings.max_retries
            assert len(found.delivery_attempts) == settings.max_retries
            assert len(bus.messages(NOTIFICATIONS_DLQ)) == 1
        finally:
            await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_receipts_move_to_delivered_and_read(self, pipeline, bus, store):
        await pipeline.start()
        try:
            n = await pipeline.ingest(request())
            await bus.join()
            await bus.publish(NOTIFICATIONS_RECEIPTS, {"notification_id": n.id, "event": "delivered"})
            await bus.join()
            assert (await store.find_by_id(n.id)).status == NotificationStatus.delivered

            await bus.publish(NOTIFICATIONS_RECEIPTS, {"notification_id": n.id, "event": "read"})
            await bus.join()
            assert (await store.find_by_id(n.id)).status == NotificationStatus.read
        finally:
            await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_flushes_aggregator_and_closes_adapters(self, pipeline, adapters, bus):
        await pipeline.start()
        await pipeline.ingest(request(priority="low"))

        await pipeline.shutdown()

        assert pipeline.aggregator.pending_count() == 0
        assert all(adapter.closed for adapter in adapters.values())


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_unknown_notification(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.get_notification("missing")

    @pytest.mark.asyncio
    async def test_list_for_user_newest_first(self, pipeline):
        older = await pipeline.ingest(request(body="first"), now=NOW)
        newer = await pipeline.ingest(request(body="second"), now=NOW + timedelta(minutes=1))

        found = await pipeline.list_for_user("user-1")

        assert [n.id for n in found] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, pipeline):
        await pipeline.ingest(request(body="first"), now=NOW)
        low = await pipeline.ingest(request(body="second", priority="low"), now=NOW)

        found = await pipeline.list_for_user("user-1", status=NotificationStatus.queued)

        assert [n.id for n in found] == [low.id]

    @pytest.mark.asyncio
    async def test_mark_read_requires_sent(self, pipeline):
        n = await pipeline.ingest(request(), now=NOW)

        with pytest.raises(InvalidTransitionError):
            await pipeline.mark_read(n.id)

    @pytest.mark.asyncio
    async def test_mark_read_after_send(self, pipeline, store):
        n = await pipeline.ingest(request(), now=NOW)
        await pipeline.delivery.deliver(await store.find_by_id(n.id), now=NOW)

        read = await pipeline.mark_read(n.id, NOW + timedelta(minutes=1))

        assert read.status == NotificationStatus.read
        assert read.read_at == NOW + timedelta(minutes=1)
