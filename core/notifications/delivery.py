"""
Delivery engine - sends a notification through its channel adapter and
records the outcome.

Failures are retried with exponential backoff by parking the notification in
QUEUED with scheduled_for set to the retry time; the scheduler picks it up
again when due. Once retries are exhausted (or the transport rejects the
message outright) the notification is FAILED and a copy goes to the
dead-letter topic.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import sentry_sdk

from core.enums import ChannelType, NotificationStatus
from core.notifications.bus import NOTIFICATIONS_DLQ, NOTIFICATIONS_SCHEDULED, MessageBus
from core.notifications.channels.base import ChannelAdapter, MessageContent
from core.notifications.errors import PermanentDeliveryError, TransientDeliveryError
from core.notifications.lifecycle import DELIVERABLE_STATES
from core.notifications.models import DeliveryAttempt, Notification, utcnow
from core.notifications.preferences import PreferenceSource
from core.notifications.store import NotificationStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_BACKOFF_SECONDS = 300


@dataclass
class DeliveryOutcome:
    success: bool
    reason: str | None = None
    provider_ref: str | None = None
    retry_at: datetime | None = None
    skipped: bool = False


def backoff_delay(retry_count: int, cap: int = DEFAULT_MAX_BACKOFF_SECONDS) -> float:
    """
    Seconds to wait before retry number `retry_count` (1-based).

    2, 4, 8, ... capped at `cap`.
    """
    return float(min(2**retry_count, cap))


class DeliveryEngine:
    def __init__(
        self,
        store: NotificationStore,
        preferences: PreferenceSource,
        bus: MessageBus,
        adapters: dict[ChannelType, ChannelAdapter],
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
    ):
        self.store = store
        self.preferences = preferences
        self.bus = bus
        self.adapters = adapters
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds

    async def deliver(
        self,
        notification: Notification,
        now: datetime | None = None,
        source_topic: str = NOTIFICATIONS_SCHEDULED,
    ) -> DeliveryOutcome:
        """
        Attempt delivery once.

        Args:
            notification: Current state of the record (freshly loaded)
            now: Clock override for tests
            source_topic: Topic the delivery request came from (for dead letters)
        """
        now = now or utcnow()
        n = notification

        if n.status not in DELIVERABLE_STATES:
            logger.info(f"Notification {n.id} is {n.status.value}, skipping delivery")
            return DeliveryOutcome(
                success=n.status
                in (NotificationStatus.sent, NotificationStatus.delivered, NotificationStatus.read),
                reason=f"already {n.status.value}",
                skipped=True,
            )

        if n.is_expired(now):
            await self.store.update_status(
                n.id, NotificationStatus.failed, {"failure_reason": "expired"}
            )
            logger.info(f"Notification {n.id} expired at {n.expires_at}, not delivering")
            return DeliveryOutcome(success=False, reason="expired")

        claimed = await self.store.update_status(
            n.id, NotificationStatus.processing, expected=DELIVERABLE_STATES
        )
        if not claimed:
            logger.info(f"Notification {n.id} changed state concurrently, skipping")
            return DeliveryOutcome(success=False, reason="status changed", skipped=True)

        adapter = self.adapters.get(n.channel)
        if adapter is None:
            return await self._handle_failure(
                n, f"No adapter for channel {n.channel.value}", True, now, None, source_topic
            )

        content = MessageContent(body=n.body, title=n.title)
        try:
            prefs = await self.preferences.get_preferences(n.user_id)
            address = prefs.channel(n.channel).address if prefs else None
            provider_ref = await asyncio.wait_for(
                adapter.send(n.user_id, content, address=address),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._handle_failure(
                n,
                f"{adapter.provider} timed out after {self.timeout_seconds}s",
                False,
                now,
                adapter,
                source_topic,
            )
        except PermanentDeliveryError as e:
            return await self._handle_failure(n, str(e), True, now, adapter, source_topic)
        except TransientDeliveryError as e:
            return await self._handle_failure(n, str(e), False, now, adapter, source_topic)
        except Exception as e:
            logger.exception(f"Unexpected error delivering notification {n.id}")
            return await self._handle_failure(
                n, f"{type(e).__name__}: {e}", False, now, adapter, source_topic
            )

        attempt = DeliveryAttempt(
            timestamp=now, status=NotificationStatus.sent, provider=adapter.provider
        )
        await self.store.update_status(
            n.id,
            NotificationStatus.sent,
            {"sent_at": now},
            expected=NotificationStatus.processing,
            attempt=attempt,
        )
        logger.info(f"Sent notification {n.id} via {adapter.provider} (ref {provider_ref})")
        return DeliveryOutcome(success=True, provider_ref=provider_ref)

    async def _handle_failure(
        self,
        n: Notification,
        error: str,
        permanent: bool,
        now: datetime,
        adapter: ChannelAdapter | None,
        source_topic: str,
    ) -> DeliveryOutcome:
        retry_count = n.retry_count + 1
        attempt = DeliveryAttempt(
            timestamp=now,
            status=NotificationStatus.failed,
            error=error,
            provider=adapter.provider if adapter else None,
        )

        if not permanent and retry_count < self.max_retries:
            retry_at = now + timedelta(
                seconds=backoff_delay(retry_count, self.max_backoff_seconds)
            )
            updated = await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {
                    "retry_count": retry_count,
                    "last_retry_at": now,
                    "scheduled_for": retry_at,
                },
                expected=NotificationStatus.processing,
                attempt=attempt,
            )
            if not updated:
                logger.warning(f"Could not queue retry for {n.id}: status changed")
            logger.warning(
                f"Delivery of {n.id} failed (attempt {retry_count}/{self.max_retries}), "
                f"retrying at {retry_at.isoformat()}: {error}"
            )
            return DeliveryOutcome(success=False, reason=error, retry_at=retry_at)

        updated = await self.store.update_status(
            n.id,
            NotificationStatus.failed,
            {"retry_count": retry_count, "last_retry_at": now, "failure_reason": error},
            expected=NotificationStatus.processing,
            attempt=attempt,
        )
        if not updated:
            logger.warning(f"Could not mark {n.id} failed: status changed")
            return DeliveryOutcome(success=False, reason=error)

        logger.error(
            f"Delivery of {n.id} failed permanently after {retry_count} attempt(s): {error}"
        )
        await self._dead_letter(n, error, now, source_topic)
        return DeliveryOutcome(success=False, reason=error)

    async def _dead_letter(
        self, n: Notification, error: str, now: datetime, source_topic: str
    ) -> None:
        payload = n.to_dict()
        payload["status"] = NotificationStatus.failed.value
        try:
            await self.bus.publish(
                NOTIFICATIONS_DLQ,
                {
                    "original_topic": source_topic,
                    "payload": payload,
                    "error": error,
                    "timestamp": now.isoformat(),
                },
            )
        except Exception as e:
            logger.error(f"Failed to dead-letter notification {n.id}: {e}")
            sentry_sdk.capture_exception(e)
        sentry_sdk.capture_message(f"Notification {n.id} dead-lettered: {error}")

    # =========================================================================
    # Receipts
    # =========================================================================

    async def confirm_delivered(self, notification_id: str, now: datetime | None = None) -> bool:
        """Transport confirmed delivery: SENT -> DELIVERED."""
        return await self.store.update_status(
            notification_id,
            NotificationStatus.delivered,
            {"delivered_at": now or utcnow()},
            expected=NotificationStatus.sent,
        )

    async def mark_read(self, notification_id: str, now: datetime | None = None) -> bool:
        """User opened the notification: SENT/DELIVERED -> READ."""
        return await self.store.update_status(
            notification_id, NotificationStatus.read, {"read_at": now or utcnow()}
        )
