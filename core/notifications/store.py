"""
Notification store - the single source of truth for notification state.

Every status write is conditional: it only applies when the record's current
status is one of the expected prior states (by default, any state the state
machine allows the target to be entered from). Concurrent workers therefore
never regress a terminal state.

Two implementations:
    SqlNotificationStore - SQLAlchemy Core over the async engine (production)
    InMemoryNotificationStore - process-local dict (development and tests)
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, case, func, insert, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from core.enums import (
    ChannelType,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)
from core.notifications.errors import InfrastructureError
from core.notifications.lifecycle import sources_for
from core.notifications.models import DeliveryAttempt, Notification, utcnow
from core.tables import notification_attempts, notifications

# Columns update_status() may touch besides status
UPDATABLE_FIELDS = frozenset(
    {
        "scheduled_for",
        "retry_count",
        "last_retry_at",
        "failure_reason",
        "aggregated_into",
        "aggregated_from",
        "sent_at",
        "delivered_at",
        "read_at",
    }
)

# Scheduler ordering: most urgent first, then oldest due time
DUE_ORDER = [("priority", "desc"), ("scheduled_for", "asc")]


@dataclass
class NotificationFilter:
    """Compound filter; unset fields don't constrain the query."""

    ids: list[str] | None = None
    user_id: str | None = None
    channel: ChannelType | None = None
    statuses: set[NotificationStatus] | None = None
    content_hash: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    sent_after: datetime | None = None
    scheduled_before: datetime | None = None

    def matches(self, n: Notification) -> bool:
        if self.ids is not None and n.id not in self.ids:
            return False
        if self.user_id is not None and n.user_id != self.user_id:
            return False
        if self.channel is not None and n.channel != self.channel:
            return False
        if self.statuses is not None and n.status not in self.statuses:
            return False
        if self.content_hash is not None and n.content_hash != self.content_hash:
            return False
        if self.created_after is not None and n.created_at < self.created_after:
            return False
        if self.created_before is not None and n.created_at > self.created_before:
            return False
        if self.sent_after is not None and (
            n.sent_at is None or n.sent_at < self.sent_after
        ):
            return False
        if self.scheduled_before is not None and (
            n.scheduled_for is None or n.scheduled_for > self.scheduled_before
        ):
            return False
        return True


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")


def _expected_states(
    status: NotificationStatus,
    expected: NotificationStatus | Iterable[NotificationStatus] | None,
) -> frozenset[NotificationStatus]:
    allowed = sources_for(status)
    if expected is None:
        return allowed
    if isinstance(expected, NotificationStatus):
        expected = {expected}
    return allowed & frozenset(expected)


class NotificationStore(ABC):
    """CRUD + query interface consumed by the pipeline."""

    @abstractmethod
    async def create(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        fields: dict | None = None,
        expected: NotificationStatus | Iterable[NotificationStatus] | None = None,
        attempt: DeliveryAttempt | None = None,
    ) -> bool:
        """
        Conditionally move a notification to a new status.

        Args:
            notification_id: Record to update
            status: Target status
            fields: Extra columns to set (see UPDATABLE_FIELDS)
            expected: Allowed prior status(es); narrowed to what the state
                      machine permits
            attempt: Delivery attempt to append in the same write

        Returns:
            True if the record was updated, False if it was missing or its
            current status did not match
        """

    @abstractmethod
    async def append_attempt(self, notification_id: str, attempt: DeliveryAttempt) -> None:
        """Append a diagnostic attempt regardless of status."""

    @abstractmethod
    async def find_by_id(self, notification_id: str) -> Notification | None:
        ...

    @abstractmethod
    async def find(
        self,
        filter: NotificationFilter,
        sort: list[tuple[str, str]] | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[Notification]:
        ...

    @abstractmethod
    async def count_where(self, filter: NotificationFilter) -> int:
        ...

    async def close(self) -> None:
        return None


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryNotificationStore(NotificationStore):
    """
    Process-local store.

    Records are copied on the way in and out so callers can't mutate stored
    state except through the interface.
    """

    def __init__(self):
        self._records: dict[str, Notification] = {}
        self._lock = asyncio.Lock()

    async def create(self, notification: Notification) -> Notification:
        async with self._lock:
            if notification.id in self._records:
                raise InfrastructureError(f"Duplicate notification id {notification.id}")
            self._records[notification.id] = copy.deepcopy(notification)
        return copy.deepcopy(notification)

    async def update_status(
        self,
        notification_id,
        status,
        fields=None,
        expected=None,
        attempt=None,
    ) -> bool:
        fields = fields or {}
        _check_fields(fields)
        allowed = _expected_states(status, expected)
        async with self._lock:
            record = self._records.get(notification_id)
            if record is None or record.status not in allowed:
                return False
            record.status = status
            for name, value in fields.items():
                setattr(record, name, copy.deepcopy(value))
            if attempt is not None:
                record.delivery_attempts.append(copy.deepcopy(attempt))
            record.updated_at = utcnow()
        return True

    async def append_attempt(self, notification_id, attempt) -> None:
        async with self._lock:
            record = self._records.get(notification_id)
            if record is not None:
                record.delivery_attempts.append(copy.deepcopy(attempt))

    async def find_by_id(self, notification_id):
        record = self._records.get(notification_id)
        return copy.deepcopy(record) if record else None

    async def find(self, filter, sort=None, limit=None, skip=0):
        matches = [n for n in self._records.values() if filter.matches(n)]
        # Stable multi-key sort: apply keys last to first
        for key, direction in reversed(sort or [("created_at", "asc")]):
            if key == "priority":
                matches.sort(key=lambda n: n.priority.rank, reverse=direction == "desc")
            else:
                present = [n for n in matches if getattr(n, key) is not None]
                missing = [n for n in matches if getattr(n, key) is None]
                present.sort(key=lambda n: getattr(n, key), reverse=direction == "desc")
                matches = present + missing
        end = skip + limit if limit is not None else None
        return [copy.deepcopy(n) for n in matches[skip:end]]

    async def count_where(self, filter) -> int:
        return sum(1 for n in self._records.values() if filter.matches(n))


# =============================================================================
# SQL implementation
# =============================================================================

_PRIORITY_ORDER = case(
    {p: p.rank for p in NotificationPriority},
    value=notifications.c.priority,
)


def _where(filter: NotificationFilter):
    c = notifications.c
    conditions = []
    if filter.ids is not None:
        conditions.append(c.notification_id.in_(filter.ids))
    if filter.user_id is not None:
        conditions.append(c.user_id == filter.user_id)
    if filter.channel is not None:
        conditions.append(c.channel == filter.channel)
    if filter.statuses is not None:
        conditions.append(c.status.in_(list(filter.statuses)))
    if filter.content_hash is not None:
        conditions.append(c.content_hash == filter.content_hash)
    if filter.created_after is not None:
        conditions.append(c.created_at >= filter.created_after)
    if filter.created_before is not None:
        conditions.append(c.created_at <= filter.created_before)
    if filter.sent_after is not None:
        conditions.append(c.sent_at >= filter.sent_after)
    if filter.scheduled_before is not None:
        conditions.append(c.scheduled_for <= filter.scheduled_before)
    return and_(true(), *conditions)


def _order_by(sort: list[tuple[str, str]] | None):
    clauses = []
    for key, direction in sort or [("created_at", "asc")]:
        column = _PRIORITY_ORDER if key == "priority" else notifications.c[key]
        clauses.append((column.desc() if direction == "desc" else column.asc()).nulls_last())
    return clauses


def _row_to_notification(row, attempts: list[DeliveryAttempt]) -> Notification:
    return Notification(
        id=row["notification_id"],
        user_id=row["user_id"],
        channel=ChannelType(row["channel"]),
        priority=NotificationPriority(row["priority"]),
        category=NotificationCategory(row["category"]),
        title=row["title"],
        body=row["body"],
        template_id=row["template_id"],
        template_data=row["template_data"] or {},
        status=NotificationStatus(row["status"]),
        content_hash=row["content_hash"],
        scheduled_for=row["scheduled_for"],
        expires_at=row["expires_at"],
        delivery_attempts=attempts,
        retry_count=row["retry_count"] or 0,
        last_retry_at=row["last_retry_at"],
        failure_reason=row["failure_reason"],
        aggregated_into=row["aggregated_into"],
        aggregated_from=row["aggregated_from"] or [],
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        sent_at=row["sent_at"],
        delivered_at=row["delivered_at"],
        read_at=row["read_at"],
    )


def _attempt_values(notification_id: str, attempt: DeliveryAttempt) -> dict:
    return {
        "notification_id": notification_id,
        "attempted_at": attempt.timestamp,
        "status": attempt.status,
        "error": attempt.error,
        "provider": attempt.provider,
    }


class SqlNotificationStore(NotificationStore):
    """Store backed by the notifications / notification_attempts tables."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def create(self, notification: Notification) -> Notification:
        n = notification
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    insert(notifications).values(
                        notification_id=n.id,
                        user_id=n.user_id,
                        channel=n.channel,
                        priority=n.priority,
                        category=n.category,
                        title=n.title,
                        body=n.body,
                        template_id=n.template_id,
                        template_data=n.template_data,
                        status=n.status,
                        content_hash=n.content_hash,
                        scheduled_for=n.scheduled_for,
                        expires_at=n.expires_at,
                        retry_count=n.retry_count,
                        failure_reason=n.failure_reason,
                        aggregated_into=n.aggregated_into,
                        aggregated_from=n.aggregated_from,
                        metadata=n.metadata,
                        created_at=n.created_at,
                        updated_at=n.updated_at,
                    )
                )
                for attempt in n.delivery_attempts:
                    await conn.execute(
                        insert(notification_attempts).values(
                            **_attempt_values(n.id, attempt)
                        )
                    )
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Failed to create notification {n.id}: {e}") from e
        return n

    async def update_status(
        self,
        notification_id,
        status,
        fields=None,
        expected=None,
        attempt=None,
    ) -> bool:
        fields = fields or {}
        _check_fields(fields)
        allowed = _expected_states(status, expected)
        if not allowed:
            return False
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    update(notifications)
                    .where(
                        and_(
                            notifications.c.notification_id == notification_id,
                            notifications.c.status.in_(list(allowed)),
                        )
                    )
                    .values(status=status, updated_at=utcnow(), **fields)
                    .returning(notifications.c.notification_id)
                )
                if result.first() is None:
                    return False
                if attempt is not None:
                    await conn.execute(
                        insert(notification_attempts).values(
                            **_attempt_values(notification_id, attempt)
                        )
                    )
        except SQLAlchemyError as e:
            raise InfrastructureError(
                f"Failed to update notification {notification_id}: {e}"
            ) from e
        return True

    async def append_attempt(self, notification_id, attempt) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    insert(notification_attempts).values(
                        **_attempt_values(notification_id, attempt)
                    )
                )
        except SQLAlchemyError as e:
            raise InfrastructureError(
                f"Failed to record attempt for {notification_id}: {e}"
            ) from e

    async def find_by_id(self, notification_id):
        found = await self.find(NotificationFilter(ids=[notification_id]), limit=1)
        return found[0] if found else None

    async def find(self, filter, sort=None, limit=None, skip=0):
        query = select(notifications).where(_where(filter)).order_by(*_order_by(sort))
        if skip:
            query = query.offset(skip)
        if limit is not None:
            query = query.limit(limit)
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(query)).mappings().all()
                ids = [row["notification_id"] for row in rows]
                attempts: dict[str, list[DeliveryAttempt]] = {i: [] for i in ids}
                if ids:
                    attempt_rows = await conn.execute(
                        select(notification_attempts)
                        .where(notification_attempts.c.notification_id.in_(ids))
                        .order_by(notification_attempts.c.attempt_id)
                    )
                    for a in attempt_rows.mappings():
                        attempts[a["notification_id"]].append(
                            DeliveryAttempt(
                                timestamp=a["attempted_at"],
                                status=NotificationStatus(a["status"]),
                                error=a["error"],
                                provider=a["provider"],
                            )
                        )
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Notification query failed: {e}") from e
        return [_row_to_notification(row, attempts[row["notification_id"]]) for row in rows]

    async def count_where(self, filter) -> int:
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    select(func.count()).select_from(notifications).where(_where(filter))
                )
                return result.scalar_one()
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Notification count failed: {e}") from e
