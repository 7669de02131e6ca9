"""Tests for the scheduler tick that re-activates deferred notifications."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.enums import ChannelType, NotificationPriority, NotificationStatus
from core.notifications.aggregator import NotificationAggregator
from core.notifications.bus import NOTIFICATIONS_SCHEDULED
from core.notifications.errors import InfrastructureError
from core.notifications.models import ChannelPreference, Limits, QuietHours, UserPreference
from core.notifications.policy import DeliverNow, PolicyEngine
from core.notifications.preferences import InMemoryPreferenceSource
from core.notifications.scheduler import TICK_JOB_ID, NotificationScheduler

NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


def build_scheduler(store, preferences, bus, batch_size=100):
    aggregator = NotificationAggregator(store, bus)
    return NotificationScheduler(
        store, preferences, PolicyEngine(store), aggregator, bus, batch_size=batch_size
    )


@pytest.fixture
def scheduler(store, preferences, bus):
    return build_scheduler(store, preferences, bus)


async def due(store, make_notification, **overrides):
    values = {"status": NotificationStatus.scheduled, "scheduled_for": NOW - timedelta(minutes=1)}
    values.update(overrides)
    n = make_notification(**values)
    await store.create(n)
    return n


class TestTick:
    @pytest.mark.asyncio
    async def test_due_notification_sent_to_delivery(self, scheduler, store, bus, make_notification):
        n = await due(store, make_notification)

        results = await scheduler.tick(NOW)

        assert results["processed"] == 1
        assert results["delivered"] == 1
        assert (await store.find_by_id(n.id)).status == NotificationStatus.processing
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == [{"notification_id": n.id}]

    @pytest.mark.asyncio
    async def test_not_yet_due_left_alone(self, scheduler, store, make_notification):
        n = await due(store, make_notification, scheduled_for=NOW + timedelta(minutes=5))

        results = await scheduler.tick(NOW)

        assert results["processed"] == 0
        assert (await store.find_by_id(n.id)).status == NotificationStatus.scheduled

    @pytest.mark.asyncio
    async def test_retry_in_queued_is_picked_up(self, scheduler, store, bus, make_notification):
        n = await due(store, make_notification, status=NotificationStatus.queued, retry_count=1)

        results = await scheduler.tick(NOW)

        assert results["delivered"] == 1
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == [{"notification_id": n.id}]

    @pytest.mark.asyncio
    async def test_expired_marked_failed(self, scheduler, store, make_notification):
        n = await due(store, make_notification, expires_at=NOW - timedelta(seconds=1))

        results = await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert results["failed"] == 1
        assert found.status == NotificationStatus.failed
        assert found.failure_reason == "expired"

    @pytest.mark.asyncio
    async def test_missing_preferences_marked_failed(self, store, bus, make_notification):
        scheduler = build_scheduler(store, InMemoryPreferenceSource(), bus)
        n = await due(store, make_notification)

        await scheduler.tick(NOW)

        assert (await store.find_by_id(n.id)).failure_reason == "preferences not found"

    @pytest.mark.asyncio
    async def test_still_quiet_hours_deferred_again(self, store, bus, make_notification):
        prefs = UserPreference(
            user_id="user-1", global_quiet_hours=QuietHours(start="11:00", end="13:00")
        )
        scheduler = build_scheduler(store, InMemoryPreferenceSource([prefs]), bus)
        n = await due(store, make_notification)

        results = await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert results["deferred"] == 1
        assert found.status == NotificationStatus.scheduled
        assert found.scheduled_for == datetime(2024, 6, 12, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_over_limit_throttled(self, store, bus, make_notification):
        prefs = UserPreference(user_id="user-1", global_limits=Limits(hourly=1))
        scheduler = build_scheduler(store, InMemoryPreferenceSource([prefs]), bus)
        await store.create(
            make_notification(status=NotificationStatus.sent, sent_at=NOW - timedelta(minutes=10))
        )
        n = await due(store, make_notification)

        results = await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert results["throttled"] == 1
        assert found.status == NotificationStatus.queued
        assert found.scheduled_for == datetime(2024, 6, 12, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_channel_disabled_rejected(self, store, bus, make_notification):
        prefs = UserPreference(
            user_id="user-1", channels={ChannelType.email: ChannelPreference(enabled=False)}
        )
        scheduler = build_scheduler(store, InMemoryPreferenceSource([prefs]), bus)
        n = await due(store, make_notification)

        await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert found.status == NotificationStatus.failed
        assert found.failure_reason == "channel disabled"

    @pytest.mark.asyncio
    async def test_low_priority_handed_to_aggregator(self, scheduler, store, make_notification):
        n = await due(store, make_notification, priority=NotificationPriority.low)

        results = await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert results["aggregated"] == 1
        assert found.status == NotificationStatus.queued
        assert found.scheduled_for is None
        assert scheduler.aggregator.pending_count() == 1

    @pytest.mark.asyncio
    async def test_batch_size_and_priority_order(self, store, preferences, bus, make_notification):
        scheduler = build_scheduler(store, preferences, bus, batch_size=2)
        medium = await due(store, make_notification, priority=NotificationPriority.medium,
                        scheduled_for=NOW - timedelta(hours=2))
        urgent = await due(store, make_notification, priority=NotificationPriority.urgent)
        high = await due(store, make_notification, priority=NotificationPriority.high)

        results = await scheduler.tick(NOW)

        assert results["processed"] == 2
        assert [m["notification_id"] for m in bus.messages(NOTIFICATIONS_SCHEDULED)] == [
            urgent.id,
            high.id,
        ]
        assert (await store.find_by_id(medium.id)).status == NotificationStatus.scheduled

    @pytest.mark.asyncio
    async def test_record_error_marks_failed_and_continues(self, scheduler, store, make_notification):
        first = await due(store, make_notification, priority=NotificationPriority.high)
        second = await due(store, make_notification)
        scheduler.policy.evaluate = AsyncMock(side_effect=[RuntimeError("boom"), DeliverNow()])

        results = await scheduler.tick(NOW)

        assert results["failed"] == 1
        assert results["delivered"] == 1
        assert (await store.find_by_id(first.id)).status == NotificationStatus.failed
        assert (await store.find_by_id(second.id)).status == NotificationStatus.processing

    @pytest.mark.asyncio
    async def test_query_failure_returns_empty_results(self, preferences, bus):
        store = MagicMock()
        store.find = AsyncMock(side_effect=InfrastructureError("db down"))
        scheduler = build_scheduler(store, preferences, bus)

        results = await scheduler.tick(NOW)

        assert results["processed"] == 0

    @pytest.mark.asyncio
    async def test_publish_failure_returns_record_to_queue(self, scheduler, store, bus, make_notification):
        n = await due(store, make_notification)

        with patch.object(bus, "publish", AsyncMock(side_effect=InfrastructureError("bus down"))):
            results = await scheduler.tick(NOW)

        found = await store.find_by_id(n.id)
        assert results["delivered"] == 0
        assert found.status == NotificationStatus.queued
        assert found.scheduled_for == NOW

    @pytest.mark.asyncio
    async def test_lost_claim_counted_as_skipped(self, scheduler, store, bus, make_notification):
        await due(store, make_notification)
        store.update_status = AsyncMock(return_value=False)

        results = await scheduler.tick(NOW)

        assert results["skipped"] == 1
        assert results["delivered"] == 0
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == []

    @pytest.mark.asyncio
    async def test_unknown_decision_fails_record(self, scheduler, store, bus, make_notification):
        n = await due(store, make_notification)
        scheduler.policy.evaluate = AsyncMock(return_value=object())

        results = await scheduler.tick(NOW)

        assert results["failed"] == 1
        assert (await store.find_by_id(n.id)).status == NotificationStatus.failed
        assert bus.messages(NOTIFICATIONS_SCHEDULED) == []


class TestLifecycle:
    def test_start_registers_interval_job(self, scheduler):
        jobs = MagicMock()

        scheduler.start(jobs)

        kwargs = jobs.add_job.call_args.kwargs
        assert kwargs["id"] == TICK_JOB_ID
        assert kwargs["trigger"] == "interval"
        assert kwargs["seconds"] == 60
        assert kwargs["coalesce"] is True
        assert kwargs["max_instances"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_removes_job(self, scheduler):
        jobs = MagicMock()
        scheduler.start(jobs)

        await scheduler.shutdown()

        jobs.remove_job.assert_called_once_with(TICK_JOB_ID)
