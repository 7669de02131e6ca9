"""
Duplicate detection by content fingerprint.

A notification is a duplicate when another live (not failed, not cancelled)
notification with the same fingerprint was created inside the window.
"""

import hashlib
import logging
import re
from datetime import datetime, timedelta

from core.enums import ChannelType, NotificationStatus
from core.notifications.models import utcnow
from core.notifications.store import NotificationFilter, NotificationStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=1)

LIVE_STATUSES = frozenset(NotificationStatus) - {
    NotificationStatus.failed,
    NotificationStatus.cancelled,
}

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", text).strip().lower()


def fingerprint(user_id: str, channel: ChannelType, message: str) -> str:
    """
    Stable SHA-256 digest over normalized (user, channel, message).

    The unit separator keeps ("ab", "c") and ("a", "bc") apart.
    """
    parts = [normalize(str(user_id)), ChannelType(channel).value, normalize(message)]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


class Deduplicator:
    def __init__(self, store: NotificationStore, window: timedelta = DEFAULT_WINDOW):
        self.store = store
        self.window = window

    async def is_duplicate(
        self,
        user_id: str,
        channel: ChannelType,
        content: str,
        window: timedelta | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Check whether an identical notification was created recently.

        Fails open: on a store error the notification is treated as new, since
        a possible duplicate is preferable to a silent drop.
        """
        now = now or utcnow()
        content_hash = fingerprint(user_id, channel, content)
        try:
            matches = await self.store.find(
                NotificationFilter(
                    content_hash=content_hash,
                    statuses=set(LIVE_STATUSES),
                    created_after=now - (window or self.window),
                ),
                limit=1,
            )
        except Exception as e:
            logger.warning(f"Duplicate check failed for user {user_id}, allowing: {e}")
            return False

        if matches:
            logger.info(
                f"Duplicate of notification {matches[0].id} for user {user_id} on {channel.value}"
            )
            return True
        return False
