"""
Pipeline orchestrator - wires ingestion, policy, routing and delivery over
message-bus topics.

    notifications.in          creation payloads      -> ingest()
    notifications.scheduled   {"notification_id"}    -> DeliveryEngine.deliver()
    notifications.aggregated  {"notification_id"}    -> DeliveryEngine.deliver()
    notifications.receipts    {"notification_id", "event"} -> delivered / read
    notifications.dlq         dead letters (written by the delivery engine)

Every collaborator is passed in; main.py builds the production set and the
tests build an in-memory one.
"""

import logging
from datetime import datetime

import sentry_sdk
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import PipelineSettings
from core.enums import ChannelType, NotificationStatus
from core.notifications.aggregator import NotificationAggregator
from core.notifications.bus import (
    NOTIFICATIONS_AGGREGATED,
    NOTIFICATIONS_IN,
    NOTIFICATIONS_RECEIPTS,
    NOTIFICATIONS_SCHEDULED,
    MessageBus,
)
from core.notifications.channels.base import ChannelAdapter
from core.notifications.dedup import Deduplicator, fingerprint
from core.notifications.delivery import DeliveryEngine
from core.notifications.errors import (
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    PolicyRejection,
    ValidationError,
)
from core.notifications.lifecycle import ensure_transition
from core.notifications.models import (
    Notification,
    NotificationCreate,
    UserPreference,
    new_notification_id,
    parse_create_request,
    utcnow,
)
from core.notifications.policy import (
    Aggregate,
    DeferUntil,
    Decision,
    PolicyEngine,
    Reject,
    Throttled,
)
from core.notifications.preferences import PreferenceSource
from core.notifications.scheduler import NotificationScheduler, create_job_scheduler
from core.notifications.store import NotificationFilter, NotificationStore
from core.notifications.templates import render_notification

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"

RECEIPT_DELIVERED = "delivered"
RECEIPT_READ = "read"


class NotificationPipeline:
    def __init__(
        self,
        store: NotificationStore,
        preferences: PreferenceSource,
        bus: MessageBus,
        adapters: dict[ChannelType, ChannelAdapter],
        settings: PipelineSettings | None = None,
    ):
        self.settings = settings or PipelineSettings()
        self.store = store
        self.preferences = preferences
        self.bus = bus
        self.adapters = adapters

        self.dedup = Deduplicator(store, self.settings.dedup_window)
        self.policy = PolicyEngine(store)
        self.aggregator = NotificationAggregator(
            store, bus, interval_seconds=self.settings.aggregation_interval_seconds
        )
        self.delivery = DeliveryEngine(
            store,
            preferences,
            bus,
            adapters,
            max_retries=self.settings.max_retries,
            timeout_seconds=self.settings.delivery_timeout_seconds,
            max_backoff_seconds=self.settings.max_backoff_seconds,
        )
        self.scheduler = NotificationScheduler(
            store,
            preferences,
            self.policy,
            self.aggregator,
            bus,
            batch_size=self.settings.scheduler_batch_size,
            interval_seconds=self.settings.scheduler_interval_seconds,
        )
        self._jobs: AsyncIOScheduler | None = None

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def ingest(
        self, request: NotificationCreate | dict, now: datetime | None = None
    ) -> Notification:
        """
        Validate, deduplicate, persist and route a new notification.

        Args:
            request: Validated request model, or a raw payload to validate
            now: Clock override for tests

        Returns:
            The stored notification in its post-routing state

        Raises:
            ValidationError: Malformed request or template problem (nothing stored)
            NotFoundError: No preferences for the user (nothing stored)
            InfrastructureError: Store unavailable before the record was stored,
                or while parking it after a routing failure
        """
        now = now or utcnow()
        if isinstance(request, dict):
            request = parse_create_request(request)

        prefs = await self.preferences.get_preferences(request.user_id)
        if prefs is None:
            raise NotFoundError(f"No preferences for user {request.user_id}")

        title, body = request.title, request.body or request.message
        if request.template_id:
            rendered_title, rendered_body = render_notification(
                request.template_id, request.template_data
            )
            title = title or rendered_title
            body = body or rendered_body

        n = Notification(
            id=new_notification_id(),
            user_id=request.user_id,
            channel=request.channel,
            priority=request.priority,
            category=request.category,
            title=title,
            body=body,
            content_hash="",
            template_id=request.template_id,
            template_data=dict(request.template_data),
            scheduled_for=request.scheduled_for,
            expires_at=request.expires_at,
            metadata=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )
        n.content_hash = fingerprint(n.user_id, n.channel, n.message)

        if await self.dedup.is_duplicate(n.user_id, n.channel, n.message, now=now):
            n.status = NotificationStatus.cancelled
            n.failure_reason = DUPLICATE
            await self.store.create(n)
            logger.info(f"Notification {n.id} for user {n.user_id} cancelled as duplicate")
            return n

        await self.store.create(n)
        logger.info(
            f"Created notification {n.id} for user {n.user_id} "
            f"({n.channel.value}, {n.priority.value})"
        )

        try:
            if n.scheduled_for and n.scheduled_for > now:
                # Policy runs when the scheduler picks it up
                await self.store.update_status(
                    n.id,
                    NotificationStatus.scheduled,
                    expected=NotificationStatus.pending,
                )
            else:
                decision = await self.policy.evaluate(n, prefs, now)
                try:
                    await self._route(n, decision, now)
                except PolicyRejection as e:
                    await self.store.update_status(
                        n.id,
                        NotificationStatus.failed,
                        {"failure_reason": e.reason},
                        expected=NotificationStatus.pending,
                    )
                    logger.info(f"Notification {n.id} rejected: {e.reason}")
            return await self.store.find_by_id(n.id) or n
        except InfrastructureError as e:
            return await self._hand_to_scheduler(n, now, e)

    async def _hand_to_scheduler(
        self, n: Notification, now: datetime, error: InfrastructureError
    ) -> Notification:
        """
        Park a stored notification whose routing failed in QUEUED, due now.

        Nothing scans PENDING, so a record left there would never be sent and
        would block retries of the same request as duplicates.

        Raises:
            InfrastructureError: The original error, if the record could not be parked
        """
        logger.warning(f"Routing failed for notification {n.id}, queueing for scheduler: {error}")
        sentry_sdk.capture_exception(error)
        try:
            await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {"scheduled_for": max(now, n.scheduled_for) if n.scheduled_for else now},
                expected=NotificationStatus.pending,
            )
            stored = await self.store.find_by_id(n.id)
        except InfrastructureError as store_error:
            logger.error(f"Could not queue notification {n.id}: {store_error}")
            raise error from store_error
        if stored is None or stored.status == NotificationStatus.pending:
            raise error
        return stored

    async def _route(self, n: Notification, decision: Decision, now: datetime) -> None:
        """Apply a policy decision to a freshly created PENDING notification."""
        if isinstance(decision, Reject):
            raise PolicyRejection(decision.reason)

        if isinstance(decision, DeferUntil):
            await self.store.update_status(
                n.id,
                NotificationStatus.scheduled,
                {"scheduled_for": decision.until},
                expected=NotificationStatus.pending,
            )
            logger.info(f"Notification {n.id} deferred until {decision.until.isoformat()}")
            return

        if isinstance(decision, Throttled):
            await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {"scheduled_for": decision.retry_at},
                expected=NotificationStatus.pending,
            )
            logger.info(f"Notification {n.id} throttled until {decision.retry_at.isoformat()}")
            return

        if isinstance(decision, Aggregate):
            await self.aggregator.add(n, now)
            return

        await self.store.update_status(
            n.id, NotificationStatus.processing, expected=NotificationStatus.pending
        )
        try:
            await self.bus.publish(NOTIFICATIONS_SCHEDULED, {"notification_id": n.id})
        except InfrastructureError:
            # Hand it to the scheduler instead of leaving it stuck in PROCESSING
            await self.store.update_status(
                n.id,
                NotificationStatus.queued,
                {"scheduled_for": now},
                expected=NotificationStatus.processing,
            )
            raise

    async def submit(self, payload: dict) -> None:
        """Queue a creation payload for asynchronous ingestion."""
        await self.bus.publish(NOTIFICATIONS_IN, payload)

    # =========================================================================
    # Bus consumers
    # =========================================================================

    async def _handle_incoming(self, payload: dict) -> None:
        try:
            await self.ingest(payload)
        except (ValidationError, NotFoundError) as e:
            logger.warning(f"Dropped notification request for user {payload.get('user_id')}: {e}")

    def _delivery_handler(self, topic: str):
        async def handle(payload: dict) -> None:
            notification_id = payload["notification_id"]
            n = await self.store.find_by_id(notification_id)
            if n is None:
                logger.warning(f"Delivery requested for unknown notification {notification_id}")
                return
            await self.delivery.deliver(n, source_topic=topic)

        return handle

    async def _handle_receipt(self, payload: dict) -> None:
        notification_id = payload["notification_id"]
        event = payload.get("event")
        if event == RECEIPT_DELIVERED:
            updated = await self.delivery.confirm_delivered(notification_id)
        elif event == RECEIPT_READ:
            updated = await self.delivery.mark_read(notification_id)
        else:
            logger.warning(f"Unknown receipt event {event!r} for {notification_id}")
            return
        if not updated:
            logger.info(f"Ignored {event} receipt for notification {notification_id}")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_notification(self, notification_id: str) -> Notification:
        n = await self.store.find_by_id(notification_id)
        if n is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return n

    async def list_for_user(
        self,
        user_id: str,
        status: NotificationStatus | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> list[Notification]:
        """A user's notifications, newest first."""
        return await self.store.find(
            NotificationFilter(user_id=user_id, statuses={status} if status else None),
            sort=[("created_at", "desc")],
            limit=limit,
            skip=skip,
        )

    async def mark_read(self, notification_id: str, now: datetime | None = None) -> Notification:
        """
        Raises:
            NotFoundError: Unknown notification
            InvalidTransitionError: Notification was not sent or delivered
        """
        n = await self.get_notification(notification_id)
        ensure_transition(n.status, NotificationStatus.read)
        if not await self.delivery.mark_read(notification_id, now):
            raise InvalidTransitionError(n.status.value, NotificationStatus.read.value)
        return await self.get_notification(notification_id)

    async def get_preferences(self, user_id: str) -> UserPreference:
        prefs = await self.preferences.get_preferences(user_id)
        if prefs is None:
            raise NotFoundError(f"No preferences for user {user_id}")
        return prefs

    async def save_preferences(self, prefs: UserPreference) -> UserPreference:
        return await self.preferences.save_preferences(prefs)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start bus consumers, then the scheduler tick and aggregator sweep."""
        workers = self.settings.workers_per_topic
        await self.bus.subscribe(NOTIFICATIONS_IN, "ingestion", self._handle_incoming, workers)
        await self.bus.subscribe(
            NOTIFICATIONS_SCHEDULED,
            "delivery",
            self._delivery_handler(NOTIFICATIONS_SCHEDULED),
            workers,
        )
        await self.bus.subscribe(
            NOTIFICATIONS_AGGREGATED,
            "delivery",
            self._delivery_handler(NOTIFICATIONS_AGGREGATED),
            workers,
        )
        await self.bus.subscribe(
            NOTIFICATIONS_RECEIPTS, "receipts", self._handle_receipt, workers
        )

        self._jobs = create_job_scheduler()
        self.scheduler.start(self._jobs)
        self.aggregator.start(self._jobs)
        logger.info("Notification pipeline started")

    async def shutdown(self) -> None:
        """Stop the tick first so nothing joins a bucket after the aggregator flush."""
        await self.scheduler.shutdown()
        await self.aggregator.shutdown()
        if self._jobs is not None:
            self._jobs.shutdown(wait=False)
            self._jobs = None

        await self.bus.close()
        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.store.close()
        logger.info("Notification pipeline stopped")
