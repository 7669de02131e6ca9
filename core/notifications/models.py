"""
Domain records for the notification pipeline.

Notification and UserPreference are plain dataclasses shared by the store,
policy, scheduler, aggregator and delivery engine. NotificationCreate is the
pydantic request schema used by both the HTTP route and the ingestion topic.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from core.enums import (
    ChannelType,
    NotificationCategory,
    NotificationPriority,
    NotificationStatus,
)
from core.notifications.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))


# =============================================================================
# Notification
# =============================================================================


@dataclass
class DeliveryAttempt:
    """One entry of a notification's append-only delivery history."""

    timestamp: datetime
    status: NotificationStatus
    error: str | None = None
    provider: str | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": _iso(self.timestamp),
            "status": self.status.value,
            "error": self.error,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryAttempt":
        return cls(
            timestamp=_parse_dt(data["timestamp"]),
            status=NotificationStatus(data["status"]),
            error=data.get("error"),
            provider=data.get("provider"),
        )


@dataclass
class Notification:
    id: str
    user_id: str
    channel: ChannelType
    priority: NotificationPriority
    category: NotificationCategory
    body: str
    content_hash: str
    title: str | None = None
    template_id: str | None = None
    template_data: dict = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.pending
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    delivery_attempts: list[DeliveryAttempt] = field(default_factory=list)
    retry_count: int = 0
    last_retry_at: datetime | None = None
    failure_reason: str | None = None
    aggregated_into: str | None = None
    aggregated_from: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None

    @property
    def message(self) -> str:
        """Single-line rendering used for fingerprints and digests."""
        if self.title:
            return f"{self.title}: {self.body}"
        return self.body

    @property
    def is_digest(self) -> bool:
        return bool(self.aggregated_from)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        """JSON-safe representation (API responses, bus payloads)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel": self.channel.value,
            "priority": self.priority.value,
            "category": self.category.value,
            "title": self.title,
            "body": self.body,
            "template_id": self.template_id,
            "template_data": self.template_data,
            "status": self.status.value,
            "content_hash": self.content_hash,
            "scheduled_for": _iso(self.scheduled_for),
            "expires_at": _iso(self.expires_at),
            "delivery_attempts": [a.to_dict() for a in self.delivery_attempts],
            "retry_count": self.retry_count,
            "last_retry_at": _iso(self.last_retry_at),
            "failure_reason": self.failure_reason,
            "aggregated_into": self.aggregated_into,
            "aggregated_from": list(self.aggregated_from),
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "read_at": _iso(self.read_at),
        }


# =============================================================================
# User preferences
# =============================================================================


def parse_hhmm(value: str) -> int:
    """
    Parse "HH:mm" into minutes since midnight.

    Raises:
        ValueError: If the string is not a valid 24-hour time
    """
    try:
        hours_str, minutes_str = value.split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time {value!r}, expected HH:mm")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time {value!r}, expected HH:mm")
    return hours * 60 + minutes


@dataclass(frozen=True)
class QuietHours:
    start: str
    end: str

    def __post_init__(self):
        parse_hhmm(self.start)
        parse_hhmm(self.end)

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end)

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: dict | None) -> "QuietHours | None":
        if not data or data.get("enabled") is False:
            return None
        return cls(start=data["start"], end=data["end"])


@dataclass(frozen=True)
class Limits:
    """Send caps; None means unlimited."""

    hourly: int | None = None
    daily: int | None = None

    def to_dict(self) -> dict:
        return {"hourly": self.hourly, "daily": self.daily}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Limits | None":
        if not data:
            return None
        return cls(hourly=data.get("hourly"), daily=data.get("daily"))


@dataclass(frozen=True)
class ChannelPreference:
    enabled: bool = True
    quiet_hours: QuietHours | None = None
    limits: Limits | None = None
    address: str | None = None

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
            "limits": self.limits.to_dict() if self.limits else None,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelPreference":
        return cls(
            enabled=data.get("enabled", True),
            quiet_hours=QuietHours.from_dict(data.get("quiet_hours")),
            limits=Limits.from_dict(data.get("limits")),
            address=data.get("address"),
        )


@dataclass(frozen=True)
class UserPreference:
    user_id: str
    channels: dict[ChannelType, ChannelPreference] = field(default_factory=dict)
    timezone: str = "UTC"
    global_quiet_hours: QuietHours | None = None
    global_limits: Limits | None = None

    def channel(self, channel: ChannelType) -> ChannelPreference:
        """Settings for a channel; channels never configured are enabled."""
        return self.channels.get(channel, ChannelPreference())

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "timezone": self.timezone,
            "channels": {c.value: p.to_dict() for c, p in self.channels.items()},
            "global_quiet_hours": (
                self.global_quiet_hours.to_dict() if self.global_quiet_hours else None
            ),
            "global_limits": (
                self.global_limits.to_dict() if self.global_limits else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserPreference":
        return cls(
            user_id=str(data["user_id"]),
            timezone=data.get("timezone") or "UTC",
            channels={
                ChannelType(name): ChannelPreference.from_dict(settings or {})
                for name, settings in (data.get("channels") or {}).items()
            },
            global_quiet_hours=QuietHours.from_dict(data.get("global_quiet_hours")),
            global_limits=Limits.from_dict(data.get("global_limits")),
        )


# =============================================================================
# Creation request
# =============================================================================


class NotificationCreate(BaseModel):
    """Schema for creating a notification."""

    user_id: str = Field(min_length=1)
    channel: ChannelType
    priority: NotificationPriority = NotificationPriority.medium
    category: NotificationCategory = NotificationCategory.system
    title: str | None = None
    body: str | None = None
    message: str | None = None
    template_id: str | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_content(self) -> "NotificationCreate":
        if not (self.body or self.message or self.template_id):
            raise ValueError("one of body, message or template_id is required")
        if (
            self.scheduled_for
            and self.expires_at
            and self.expires_at <= self.scheduled_for
        ):
            raise ValueError("expires_at must be after scheduled_for")
        return self


def validation_errors(exc: PydanticValidationError) -> list[dict]:
    """Flatten pydantic errors into [{"field", "message"}]."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors.append(
            {"field": ".".join(loc) or "__root__", "message": error.get("msg", "")}
        )
    return errors


def parse_create_request(payload: dict) -> NotificationCreate:
    """
    Validate a raw creation payload.

    Raises:
        ValidationError: With field-level errors if the payload is malformed
    """
    try:
        return NotificationCreate.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid notification request", validation_errors(e))


def new_notification_id() -> str:
    return uuid.uuid4().hex
