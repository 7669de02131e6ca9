"""Shared fixtures for notification pipeline tests.

Everything runs against the in-memory store, preference source and bus, with
fake channel adapters that record what they were asked to send.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from core.config import PipelineSettings
from core.enums import (
    ChannelType,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)
from core.notifications.bus import InMemoryMessageBus
from core.notifications.channels.base import ChannelAdapter
from core.notifications.dedup import fingerprint
from core.notifications.models import ChannelPreference, Notification, UserPreference
from core.notifications.preferences import InMemoryPreferenceSource
from core.notifications.store import InMemoryNotificationStore

USER_ID = "user-1"

# A Wednesday, 12:00 UTC
NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


class FakeAdapter(ChannelAdapter):
    """Records sends; raises `error` on every call when set."""

    def __init__(self, channel: ChannelType, error: Exception | None = None):
        self.channel = channel
        self.provider = f"fake-{channel.value}"
        self.error = error
        self.calls = 0
        self.sent = []
        self.closed = False

    async def send(self, user_id, content, address=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.sent.append({"user_id": user_id, "content": content, "address": address})
        return f"ref-{self.calls}"

    async def aclose(self):
        self.closed = True


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest_asyncio.fixture
async def bus():
    bus = InMemoryMessageBus()
    yield bus
    await bus.close()


@pytest.fixture
def prefs():
    return UserPreference(
        user_id=USER_ID,
        channels={
            ChannelType.email: ChannelPreference(address="alice@example.com"),
            ChannelType.sms: ChannelPreference(address="+15550100"),
        },
    )


@pytest.fixture
def preferences(prefs):
    return InMemoryPreferenceSource([prefs])


@pytest.fixture
def adapters():
    return {channel: FakeAdapter(channel) for channel in ChannelType}


@pytest.fixture
def settings():
    return PipelineSettings(max_retries=3, delivery_timeout_seconds=1.0, workers_per_topic=1)


@pytest.fixture
def make_notification():
    """Factory for Notification records with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides) -> Notification:
        counter["n"] += 1
        values = {
            "id": f"n-{counter['n']}",
            "user_id": USER_ID,
            "channel": ChannelType.email,
            "priority": NotificationPriority.medium,
            "category": NotificationCategory.system,
            "body": f"Message {counter['n']}",
            "status": NotificationStatus.pending,
            "created_at": NOW,
            "updated_at": NOW,
        }
        values.update(overrides)
        if "content_hash" not in values:
            values["content_hash"] = fingerprint(
                values["user_id"], values["channel"], values["body"]
            )
        return Notification(**values)

    return _make
