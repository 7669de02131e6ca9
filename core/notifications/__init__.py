"""
Notification processing pipeline.

Public API:
    NotificationPipeline(store, preferences, bus, adapters, settings)
        ingest(request) - Validate, deduplicate, persist and route
        submit(payload) - Queue a creation payload on notifications.in
        start() / shutdown() - Bus consumers, scheduler tick, aggregator sweep

Building blocks:
    decide(notification, prefs, now, usage) - Pure delivery policy
    Deduplicator.is_duplicate(...) - Content fingerprint within a window
    NotificationScheduler.tick() - Re-activate due SCHEDULED / QUEUED work
    NotificationAggregator.sweep() - Collapse low-priority buckets into digests
    DeliveryEngine.deliver(notification) - Send with retry, backoff and dead letters
"""

from .aggregator import NotificationAggregator
from .bus import InMemoryMessageBus, MessageBus
from .dedup import Deduplicator, fingerprint
from .delivery import DeliveryEngine, DeliveryOutcome
from .models import Notification, NotificationCreate, UserPreference
from .orchestrator import NotificationPipeline
from .policy import PolicyEngine, decide
from .preferences import InMemoryPreferenceSource, PreferenceSource, SqlPreferenceSource
from .scheduler import NotificationScheduler
from .store import InMemoryNotificationStore, NotificationStore, SqlNotificationStore

__all__ = [
    # Pipeline
    "NotificationPipeline",
    "NotificationScheduler",
    "NotificationAggregator",
    "DeliveryEngine",
    "DeliveryOutcome",
    "PolicyEngine",
    "decide",
    "Deduplicator",
    "fingerprint",
    # Records
    "Notification",
    "NotificationCreate",
    "UserPreference",
    # Collaborators
    "NotificationStore",
    "InMemoryNotificationStore",
    "SqlNotificationStore",
    "PreferenceSource",
    "InMemoryPreferenceSource",
    "SqlPreferenceSource",
    "MessageBus",
    "InMemoryMessageBus",
]
