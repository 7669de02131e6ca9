"""
Delivery policy: decide whether a notification goes out now, waits for quiet
hours to end, waits for the rate limit window, joins a digest, or is refused.

decide() is pure - the same (notification, prefs, now, usage) always yields
the same decision. PolicyEngine.evaluate() gathers the live send counts from
the store and delegates to it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

import pytz

from core.enums import ChannelType, NotificationPriority, NotificationStatus
from core.notifications.models import Limits, Notification, QuietHours, UserPreference
from core.notifications.store import NotificationFilter, NotificationStore

BYPASS_PRIORITIES = frozenset({NotificationPriority.high, NotificationPriority.urgent})

# Statuses that count against a user's send limits
COUNTED_STATUSES = frozenset(
    {NotificationStatus.sent, NotificationStatus.delivered, NotificationStatus.read}
)

CHANNEL_DISABLED = "channel disabled"


# =============================================================================
# Decisions
# =============================================================================


@dataclass(frozen=True)
class DeliverNow:
    pass


@dataclass(frozen=True)
class DeferUntil:
    until: datetime


@dataclass(frozen=True)
class Throttled:
    retry_at: datetime


@dataclass(frozen=True)
class Aggregate:
    pass


@dataclass(frozen=True)
class Reject:
    reason: str


Decision = DeliverNow | DeferUntil | Throttled | Aggregate | Reject


@dataclass(frozen=True)
class ThrottleUsage:
    """Sends already made for a (user, channel) in the trailing windows."""

    hourly: int = 0
    daily: int = 0


# =============================================================================
# Helpers
# =============================================================================


def _zone(name: str):
    """pytz zone for a user; unknown names fall back to UTC."""
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        return pytz.utc


def is_valid_timezone(name: str) -> bool:
    return name in pytz.all_timezones_set


def effective_quiet_hours(prefs: UserPreference, channel: ChannelType) -> QuietHours | None:
    """Channel quiet hours win over global ones."""
    return prefs.channel(channel).quiet_hours or prefs.global_quiet_hours


def effective_limits(prefs: UserPreference, channel: ChannelType) -> tuple[int | None, int | None]:
    """(hourly, daily) limits, each falling back from channel to global."""
    channel_limits = prefs.channel(channel).limits or Limits()
    global_limits = prefs.global_limits or Limits()
    hourly = channel_limits.hourly if channel_limits.hourly is not None else global_limits.hourly
    daily = channel_limits.daily if channel_limits.daily is not None else global_limits.daily
    return hourly, daily


def in_quiet_hours(quiet: QuietHours, local_now: datetime) -> bool:
    """
    Minute-resolution membership test; both ends are inclusive.

    start <= end: start <= now <= end
    start > end (spans midnight): now >= start or now <= end
    """
    minute = local_now.hour * 60 + local_now.minute
    start, end = quiet.start_minute, quiet.end_minute
    if start <= end:
        return start <= minute <= end
    return minute >= start or minute <= end


def next_quiet_end(quiet: QuietHours, local_now: datetime) -> datetime:
    """
    Next moment the quiet window is over, as a UTC timestamp.

    Today's end if still ahead; the following minute if we are inside the end
    minute itself (the window is inclusive); otherwise tomorrow's end.

    Args:
        quiet: The active quiet window
        local_now: Current time in the user's pytz zone
    """
    tz = local_now.tzinfo
    wall_now = local_now.replace(tzinfo=None)
    end_minute = quiet.end_minute
    candidate = wall_now.replace(
        hour=end_minute // 60, minute=end_minute % 60, second=0, microsecond=0
    )
    if candidate > wall_now:
        boundary = candidate
    elif wall_now - candidate < timedelta(minutes=1):
        boundary = candidate + timedelta(minutes=1)
    else:
        boundary = candidate + timedelta(days=1)
    # Localize the wall-clock time so DST changes between now and the boundary apply
    return tz.localize(boundary).astimezone(pytz.utc)


def start_of_next_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


# =============================================================================
# Decision
# =============================================================================


def decide(
    notification: Notification,
    prefs: UserPreference,
    now: datetime,
    usage: ThrottleUsage | None = None,
) -> Decision:
    """
    Decide what to do with a notification right now.

    Order: channel disabled, priority bypass, quiet hours, rate limits,
    low-priority aggregation, deliver. Quiet hours are checked before limits,
    so a notification that is both in quiet hours and over its limit is
    deferred rather than throttled.

    Digests and notifications already in the retry cycle are never sent back
    to aggregation.
    """
    channel = notification.channel
    usage = usage or ThrottleUsage()

    if not prefs.channel(channel).enabled:
        return Reject(CHANNEL_DISABLED)

    if notification.priority in BYPASS_PRIORITIES:
        return DeliverNow()

    quiet = effective_quiet_hours(prefs, channel)
    if quiet is not None:
        local_now = now.astimezone(_zone(prefs.timezone))
        if in_quiet_hours(quiet, local_now):
            return DeferUntil(next_quiet_end(quiet, local_now))

    hourly_limit, daily_limit = effective_limits(prefs, channel)
    if (hourly_limit is not None and usage.hourly >= hourly_limit) or (
        daily_limit is not None and usage.daily >= daily_limit
    ):
        return Throttled(start_of_next_hour(now))

    if (
        notification.priority == NotificationPriority.low
        and not notification.is_digest
        and notification.retry_count == 0
    ):
        return Aggregate()

    return DeliverNow()


class PolicyEngine:
    """Binds decide() to live send counts from the store."""

    def __init__(self, store: NotificationStore):
        self.store = store

    async def usage(self, user_id: str, channel: ChannelType, now: datetime) -> ThrottleUsage:
        hourly = await self.store.count_where(
            NotificationFilter(
                user_id=user_id,
                channel=channel,
                statuses=set(COUNTED_STATUSES),
                sent_after=now - timedelta(hours=1),
            )
        )
        daily = await self.store.count_where(
            NotificationFilter(
                user_id=user_id,
                channel=channel,
                statuses=set(COUNTED_STATUSES),
                sent_after=now - timedelta(days=1),
            )
        )
        return ThrottleUsage(hourly=hourly, daily=daily)

    async def evaluate(
        self, notification: Notification, prefs: UserPreference, now: datetime
    ) -> Decision:
        # Counts are only needed when limits can apply
        needs_usage = (
            prefs.channel(notification.channel).enabled
            and notification.priority not in BYPASS_PRIORITIES
            and any(limit is not None for limit in effective_limits(prefs, notification.channel))
        )
        usage = (
            await self.usage(notification.user_id, notification.channel, now)
            if needs_usage
            else ThrottleUsage()
        )
        return decide(notification, prefs, now, usage)
