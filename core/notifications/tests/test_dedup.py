"""Tests for content fingerprinting and duplicate detection."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.enums import ChannelType, NotificationStatus
from core.notifications.dedup import Deduplicator, fingerprint, normalize
from core.notifications.errors import InfrastructureError

USER_ID = "user-1"
NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


class TestFingerprint:
    def test_normalize_collapses_case_and_whitespace(self):
        assert normalize("  Your  Order\nhas SHIPPED ") == "your order has shipped"

    def test_equal_after_normalization(self):
        a = fingerprint(USER_ID, ChannelType.email, "Your order has shipped")
        b = fingerprint(USER_ID, ChannelType.email, "  your ORDER   has shipped")
        assert a == b

    def test_differs_by_channel_and_user(self):
        base = fingerprint(USER_ID, ChannelType.email, "hello")
        assert fingerprint(USER_ID, ChannelType.sms, "hello") != base
        assert fingerprint("user-2", ChannelType.email, "hello") != base

    def test_field_boundaries_are_kept(self):
        assert fingerprint("ab", ChannelType.email, "c") != fingerprint("a", ChannelType.email, "bc")


class TestDeduplicator:
    @pytest.mark.asyncio
    async def test_recent_identical_notification_is_duplicate(self, store, make_notification):
        await store.create(make_notification(body="Sale today", created_at=NOW - timedelta(minutes=10)))

        dedup = Deduplicator(store)

        assert await dedup.is_duplicate(USER_ID, ChannelType.email, "Sale today", now=NOW)

    @pytest.mark.asyncio
    async def test_outside_window_is_not_duplicate(self, store, make_notification):
        await store.create(make_notification(body="Sale today", created_at=NOW - timedelta(hours=2)))

        dedup = Deduplicator(store)

        assert not await dedup.is_duplicate(USER_ID, ChannelType.email, "Sale today", now=NOW)

    @pytest.mark.asyncio
    async def test_window_override(self, store, make_notification):
        await store.create(make_notification(body="Sale today", created_at=NOW - timedelta(hours=2)))

        dedup = Deduplicator(store)

        assert await dedup.is_duplicate(
            USER_ID, ChannelType.email, "Sale today", window=timedelta(hours=3), now=NOW
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [NotificationStatus.failed, NotificationStatus.cancelled]
    )
    async def test_failed_and_cancelled_do_not_count(self, store, make_notification, status):
        await store.create(make_notification(body="Sale today", status=status, created_at=NOW))

        dedup = Deduplicator(store)

        assert not await dedup.is_duplicate(USER_ID, ChannelType.email, "Sale today", now=NOW)

    @pytest.mark.asyncio
    async def test_fails_open_on_store_error(self):
        store = MagicMock()
        store.find = AsyncMock(side_effect=InfrastructureError("db down"))

        dedup = Deduplicator(store)

        assert not await dedup.is_duplicate(USER_ID, ChannelType.email, "Sale today", now=NOW)
