# web_api/tests/conftest.py
"""Pytest fixtures for web API tests.

Routes get an in-memory NotificationPipeline through a dependency override,
so the API can be exercised without a database, channel credentials or the
lifespan-managed workers. The pipeline is never started: accepted
notifications are published to the bus log but nothing consumes them.
"""

import pytest
from fastapi.testclient import TestClient

from core.config import PipelineSettings
from core.enums import ChannelType
from core.notifications.bus import InMemoryMessageBus
from core.notifications.channels.base import ChannelAdapter
from core.notifications.models import ChannelPreference, UserPreference
from core.notifications.orchestrator import NotificationPipeline
from core.notifications.preferences import InMemoryPreferenceSource
from core.notifications.store import InMemoryNotificationStore
from main import app
from web_api.pipeline import get_pipeline


class StubAdapter(ChannelAdapter):
    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.provider = f"stub-{channel.value}"

    async def send(self, user_id, content, address=None):
        return "stub-ref"


@pytest.fixture
def api_pipeline():
    prefs = UserPreference(
        user_id="api-user",
        channels={
            ChannelType.email: ChannelPreference(address="api-user@example.com"),
            ChannelType.sms: ChannelPreference(enabled=False),
        },
    )
    return NotificationPipeline(
        store=InMemoryNotificationStore(),
        preferences=InMemoryPreferenceSource([prefs]),
        bus=InMemoryMessageBus(),
        adapters={channel: StubAdapter(channel) for channel in ChannelType},
        settings=PipelineSettings(),
    )


@pytest.fixture
def client(api_pipeline):
    """TestClient without the lifespan; routes see `api_pipeline`."""
    app.dependency_overrides[get_pipeline] = lambda: api_pipeline
    yield TestClient(app)
    app.dependency_overrides.pop(get_pipeline, None)
