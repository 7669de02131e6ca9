"""
Low-priority notification aggregation.

Low-priority notifications are held in in-memory buckets keyed by
(user, channel, hour). A periodic sweep closes every bucket whose hour has
started: two or more items become one digest notification, a lone item is
sent on as-is.

While bucketed, an original sits in QUEUED without a scheduled_for, so the
scheduler never picks it up. Buckets live only in this process: a crash loses
whatever was not flushed (at-most-once); shutdown() flushes everything it can
and counts the rest in `lost_items`.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone

import sentry_sdk
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.enums import (
    ChannelType,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)
from core.notifications.bus import (
    NOTIFICATIONS_AGGREGATED,
    NOTIFICATIONS_SCHEDULED,
    MessageBus,
)
from core.notifications.dedup import fingerprint
from core.notifications.errors import InfrastructureError
from core.notifications.models import Notification, new_notification_id, utcnow
from core.notifications.store import NotificationStore
from core.notifications.templates import render_notification

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "notification_aggregator_sweep"

BucketKey = tuple[str, ChannelType, datetime]


def hour_key(ts: datetime) -> datetime:
    """Start of the UTC hour containing ts."""
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def build_summary(items: list[Notification]) -> str:
    """
    Group messages by category, with counts.

        Marketing (2):
        - Spring sale starts today
        - New arrivals (x2)
    """
    by_category: dict[NotificationCategory, Counter] = {}
    for n in items:
        by_category.setdefault(n.category, Counter())[n.message] += 1

    lines = []
    for category, messages in by_category.items():
        lines.append(f"{category.value.title()} ({sum(messages.values())}):")
        for message, count in messages.items():
            suffix = f" (x{count})" if count > 1 else ""
            lines.append(f"- {message}{suffix}")
    return "\n".join(lines)


class NotificationAggregator:
    def __init__(
        self,
        store: NotificationStore,
        bus: MessageBus,
        interval_seconds: int = 300,
    ):
        self.store = store
        self.bus = bus
        self.interval_seconds = interval_seconds
        self.lost_items = 0
        self._buckets: dict[BucketKey, list[Notification]] = {}
        self._lock = asyncio.Lock()
        self._sweep_lock = asyncio.Lock()
        self._jobs: AsyncIOScheduler | None = None

    # =========================================================================
    # Buckets
    # =========================================================================

    async def add(self, notification: Notification, now: datetime | None = None) -> bool:
        """
        Hold a notification for the digest of the current hour.

        Returns:
            False if the notification could not be claimed (status changed)
        """
        now = now or utcnow()
        claimed = await self.store.update_status(
            notification.id,
            NotificationStatus.queued,
            {"scheduled_for": None},
            expected={
                NotificationStatus.pending,
                NotificationStatus.scheduled,
                NotificationStatus.queued,
            },
        )
        if not claimed:
            logger.info(f"Notification {notification.id} changed state, not aggregating")
            return False

        notification.status = NotificationStatus.queued
        notification.scheduled_for = None
        key = (notification.user_id, notification.channel, hour_key(now))
        async with self._lock:
            self._buckets.setdefault(key, []).append(notification)
        logger.info(
            f"Added notification {notification.id} to aggregation bucket "
            f"{notification.user_id}/{notification.channel.value}/{key[2].isoformat()}"
        )
        return True

    def pending_count(self) -> int:
        return sum(len(items) for items in self._buckets.values())

    # =========================================================================
    # Sweep
    # =========================================================================

    async def sweep(self, now: datetime | None = None, force: bool = False) -> dict:
        """
        Close due buckets.

        Args:
            now: Clock override for tests
            force: Close every bucket regardless of hour (shutdown flush)

        Returns:
            Counts: {"digests": N, "promoted": N, "failed": N}
        """
        now = now or utcnow()
        results = {"digests": 0, "promoted": 0, "failed": 0}

        async with self._sweep_lock:
            current = hour_key(now)
            async with self._lock:
                due = {
                    key: items
                    for key, items in self._buckets.items()
                    if force or key[2] <= current
                }
                for key in due:
                    del self._buckets[key]

            for key, items in due.items():
                try:
                    if len(items) >= 2:
                        await self._create_digest(key, items, now)
                        results["digests"] += 1
                    elif items:
                        await self._promote(items[0], now)
                        results["promoted"] += 1
                except Exception as e:
                    results["failed"] += len(items)
                    logger.error(f"Failed to close aggregation bucket {key[0]}/{key[1].value}: {e}")
                    sentry_sdk.capture_exception(e)
                    if not force:
                        # Retry on the next sweep, minus anything already linked to a digest
                        retry = await self._still_bucketed(items)
                        async with self._lock:
                            self._buckets.setdefault(key, []).extend(retry)
                    else:
                        self.lost_items += len(items)

        if due:
            logger.info(
                f"Aggregation sweep: {results['digests']} digests, "
                f"{results['promoted']} promoted, {results['failed']} failed"
            )
        return results

    async def _still_bucketed(self, items: list[Notification]) -> list[Notification]:
        """Items whose stored record is still an unlinked, bucketed QUEUED record."""
        remaining = []
        for n in items:
            try:
                current = await self.store.find_by_id(n.id)
            except InfrastructureError:
                remaining.append(n)
                continue
            if (
                current is not None
                and current.status == NotificationStatus.queued
                and current.scheduled_for is None
                and current.aggregated_into is None
            ):
                remaining.append(n)
        return remaining

    async def _create_digest(
        self, key: BucketKey, items: list[Notification], now: datetime
    ) -> Notification:
        user_id, channel, hour = key
        title, body = render_notification(
            "digest", {"count": len(items), "summary": build_summary(items)}
        )
        categories = {n.category for n in items}
        digest = Notification(
            id=new_notification_id(),
            user_id=user_id,
            channel=channel,
            priority=NotificationPriority.low,
            category=categories.pop() if len(categories) == 1 else NotificationCategory.system,
            title=title,
            body=body,
            content_hash=fingerprint(user_id, channel, f"{title}: {body}"),
            scheduled_for=hour,
            aggregated_from=[n.id for n in items],
            created_at=now,
            updated_at=now,
        )
        await self.store.create(digest)

        for n in items:
            linked = await self.store.update_status(
                n.id,
                NotificationStatus.aggregated,
                {"aggregated_into": digest.id},
                expected=NotificationStatus.queued,
            )
            if not linked:
                logger.warning(f"Notification {n.id} left its bucket before digest {digest.id}")

        await self.store.update_status(
            digest.id, NotificationStatus.processing, expected=NotificationStatus.pending
        )
        await self._publish_or_requeue(NOTIFICATIONS_AGGREGATED, digest.id, now)
        logger.info(f"Created digest {digest.id} from {len(items)} notifications for user {user_id}")
        return digest

    async def _promote(self, n: Notification, now: datetime) -> None:
        """A bucket of one is delivered normally rather than wrapped in a digest."""
        promoted = await self.store.update_status(
            n.id, NotificationStatus.processing, expected=NotificationStatus.queued
        )
        if not promoted:
            logger.info(f"Notification {n.id} changed state, not promoting")
            return
        await self._publish_or_requeue(NOTIFICATIONS_SCHEDULED, n.id, now)
        logger.info(f"Promoted single notification {n.id} to delivery")

    async def _publish_or_requeue(self, topic: str, notification_id: str, now: datetime) -> None:
        """
        Publish a PROCESSING record for delivery.

        If the bus is down the record goes back to QUEUED, due now, and the
        scheduler delivers it on a later tick.
        """
        try:
            await self.bus.publish(topic, {"notification_id": notification_id})
        except InfrastructureError as e:
            logger.warning(f"Could not publish {notification_id} to {topic}, handing to scheduler: {e}")
            sentry_sdk.capture_exception(e)
            await self.store.update_status(
                notification_id,
                NotificationStatus.queued,
                {"scheduled_for": now},
                expected=NotificationStatus.processing,
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, jobs: AsyncIOScheduler) -> None:
        """Register the periodic sweep on a running APScheduler."""
        self._jobs = jobs
        jobs.add_job(
            self.sweep,
            trigger="interval",
            seconds=self.interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"Notification aggregator started (every {self.interval_seconds}s)")

    async def shutdown(self) -> None:
        """Stop sweeping, wait for an in-flight sweep, then flush every bucket."""
        if self._jobs is not None:
            try:
                self._jobs.remove_job(SWEEP_JOB_ID)
            except JobLookupError:
                pass
            self._jobs = None

        pending = self.pending_count()
        if pending:
            await self.sweep(force=True)
        if self.lost_items:
            logger.error(f"Aggregator lost {self.lost_items} notifications on shutdown")
            sentry_sdk.capture_message(
                f"Notification aggregator lost {self.lost_items} notifications on shutdown"
            )
        logger.info("Notification aggregator stopped")
