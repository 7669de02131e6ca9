"""SQLAlchemy enum definitions for the database schema."""

import enum

from sqlalchemy import Enum as SQLEnum


# =====================================================
# Python Enum Classes
# =====================================================


class NotificationStatus(str, enum.Enum):
    pending = "pending"
    queued = "queued"
    scheduled = "scheduled"
    processing = "processing"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"
    cancelled = "cancelled"
    aggregated = "aggregated"


class ChannelType(str, enum.Enum):
    email = "email"
    sms = "sms"
    push = "push"


class NotificationPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"

    @property
    def rank(self) -> int:
        """Numeric rank for ordering (higher is more urgent)."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.low: 0,
    NotificationPriority.medium: 1,
    NotificationPriority.high: 2,
    NotificationPriority.urgent: 3,
}


class NotificationCategory(str, enum.Enum):
    marketing = "marketing"
    system = "system"
    security = "security"


# =====================================================
# SQLAlchemy Enum Types
# These reference existing PostgreSQL types (create_type=False)
# =====================================================

notification_status_enum = SQLEnum(
    NotificationStatus, name="notification_status", create_type=False, native_enum=True
)
channel_type_enum = SQLEnum(
    ChannelType, name="channel_type", create_type=False, native_enum=True
)
notification_priority_enum = SQLEnum(
    NotificationPriority,
    name="notification_priority",
    create_type=False,
    native_enum=True,
)
notification_category_enum = SQLEnum(
    NotificationCategory,
    name="notification_category",
    create_type=False,
    native_enum=True,
)
