"""
APScheduler-based re-activation of deferred notifications.

Notifications parked in SCHEDULED (quiet hours, future send time) or QUEUED
(throttled, waiting for a retry) carry a scheduled_for. Every tick loads the
due ones, re-runs the policy engine against fresh preferences and counts, and
routes each record again. Nothing is held in memory between ticks: the store
is the source of truth, so a restart loses no deferred work.
"""

import asyncio
import logging
from datetime import datetime

import sentry_sdk
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.enums import NotificationStatus
from core.notifications.aggregator import NotificationAggregator
from core.notifications.bus import NOTIFICATIONS_SCHEDULED, MessageBus
from core.notifications.errors import InfrastructureError
from core.notifications.models import Notification, utcnow
from core.notifications.policy import (
    Aggregate,
    DeferUntil,
    DeliverNow,
    PolicyEngine,
    Reject,
    Throttled,
)
from core.notifications.preferences import PreferenceSource
from core.notifications.store import DUE_ORDER, NotificationFilter, NotificationStore

logger = logging.getLogger(__name__)

TICK_JOB_ID = "notification_scheduler_tick"

DUE_STATUSES = {NotificationStatus.scheduled, NotificationStatus.queued}


# =============================================================================
# Job scheduler initialization
# =============================================================================


def create_job_scheduler() -> AsyncIOScheduler:
    """
    Create and start the APScheduler that runs the periodic pipeline jobs.

    Jobs are registered by NotificationScheduler and NotificationAggregator.
    Nothing is persisted in APScheduler itself: due work lives in the
    notifications table, so an in-memory job store is enough.
    """
    jobs = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )
    jobs.start()
    logger.info("Pipeline job scheduler started")
    return jobs


# =============================================================================
# Scheduler
# =============================================================================


class NotificationScheduler:
    def __init__(
        self,
        store: NotificationStore,
        preferences: PreferenceSource,
        policy: PolicyEngine,
        aggregator: NotificationAggregator,
        bus: MessageBus,
        batch_size: int = 100,
        interval_seconds: int = 60,
    ):
        self.store = store
        self.preferences = preferences
        self.policy = policy
        self.aggregator = aggregator
        self.bus = bus
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self._tick_lock = asyncio.Lock()
        self._jobs: AsyncIOScheduler | None = None

    async def tick(self, now: datetime | None = None) -> dict:
        """
        Process one batch of due notifications.

        Returns:
            Counts: {"processed", "delivered", "deferred", "throttled",
            "aggregated", "failed", "skipped"}
        """
        now = now or utcnow()
        results = {
            "processed": 0,
            "delivered": 0,
            "deferred": 0,
            "throttled": 0,
            "aggregated": 0,
            "failed": 0,
            "skipped": 0,
        }

        async with self._tick_lock:
            try:
                due = await self.store.find(
                    NotificationFilter(statuses=set(DUE_STATUSES), scheduled_before=now),
                    sort=DUE_ORDER,
                    limit=self.batch_size,
                )
            except Exception as e:
                logger.error(f"Scheduler could not load due notifications: {e}")
                sentry_sdk.capture_exception(e)
                return results

            for n in due:
                results["processed"] += 1
                try:
                    outcome = await self._process(n, now)
                except InfrastructureError as e:
                    # Left as-is; picked up again on the next tick
                    logger.warning(f"Scheduler skipped notification {n.id}: {e}")
                    sentry_sdk.capture_exception(e)
                    continue
                except Exception as e:
                    outcome = "failed"
                    logger.error(f"Scheduler failed to process notification {n.id}: {e}")
                    sentry_sdk.capture_exception(e)
                    try:
                        await self._fail(n, f"scheduler error: {e}")
                    except InfrastructureError as store_error:
                        logger.error(f"Could not mark {n.id} failed: {store_error}")
                results[outcome] += 1

        if results["processed"]:
            logger.info(
                f"Scheduler tick: {results['processed']} processed, "
                f"{results['delivered']} delivered, {results['deferred']} deferred, "
                f"{results['throttled']} throttled, {results['aggregated']} aggregated, "
                f"{results['failed']} failed, {results['skipped']} skipped"
            )
        return results

    async def _process(self, n: Notification, now: datetime) -> str:
        """Route one due notification; returns the results key it counts under."""
        if n.is_expired(now):
            await self._fail(n, "expired")
            return "failed"

        prefs = await self.preferences.get_preferences(n.user_id)
        if prefs is None:
            await self._fail(n, "preferences not found")
            return "failed"

        decision = await self.policy.evaluate(n, prefs, now)

        if isinstance(decision, DeferUntil):
            await self.store.update_status(
                n.id,
                NotificationStatus.scheduled,
                {"scheduled_for": decision.until},
                expected=n.status,
            )
            return "deferred"

        if isinstance(decision, Throttled):
            await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {"scheduled_for": decision.retry_at},
                expected=n.status,
            )
            return "throttled"

        if isinstance(decision, Reject):
            await self._fail(n, decision.reason)
            return "failed"

        if isinstance(decision, Aggregate):
            if not await self.aggregator.add(n, now):
                return "skipped"
            return "aggregated"

        if not isinstance(decision, DeliverNow):
            raise TypeError(f"Unknown policy decision {decision!r}")

        claimed = await self.store.update_status(
            n.id, NotificationStatus.processing, expected=n.status
        )
        if not claimed:
            logger.info(f"Notification {n.id} changed state before delivery, skipping")
            return "skipped"
        try:
            await self.bus.publish(NOTIFICATIONS_SCHEDULED, {"notification_id": n.id})
        except InfrastructureError:
            await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {"scheduled_for": now},
                expected=NotificationStatus.processing,
            )
            raise
        return "delivered"

    async def _fail(self, n: Notification, reason: str) -> None:
        await self.store.update_status(
            n.id,
            NotificationStatus.failed,
            {"failure_reason": reason},
            expected=DUE_STATUSES,
        )
        logger.info(f"Notification {n.id} failed in scheduler: {reason}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, jobs: AsyncIOScheduler) -> None:
        """Register the periodic tick on a running APScheduler."""
        self._jobs = jobs
        jobs.add_job(
            self.tick,
            trigger="interval",
            seconds=self.interval_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"Notification scheduler started (every {self.interval_seconds}s)")

    async def shutdown(self) -> None:
        """Remove the tick job and let an in-flight tick finish."""
        if self._jobs is not None:
            try:
                self._jobs.remove_job(TICK_JOB_ID)
            except JobLookupError:
                pass
            self._jobs = None

        async with self._tick_lock:
            pass
        logger.info("Notification scheduler stopped")
