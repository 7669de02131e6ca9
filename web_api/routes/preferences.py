"""
User preference routes.

Endpoints:
- GET /api/users/{user_id}/preferences - Get channel settings
- PUT /api/users/{user_id}/preferences - Replace channel settings
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.enums import ChannelType
from core.notifications.errors import ValidationError
from core.notifications.models import UserPreference
from core.notifications.orchestrator import NotificationPipeline
from core.notifications.policy import is_valid_timezone
from web_api.pipeline import get_pipeline

router = APIRouter(prefix="/api/users", tags=["preferences"])


class QuietHoursSchema(BaseModel):
    enabled: bool = True
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")


class LimitsSchema(BaseModel):
    hourly: int | None = Field(default=None, ge=0)
    daily: int | None = Field(default=None, ge=0)


class ChannelPreferenceSchema(BaseModel):
    enabled: bool = True
    quiet_hours: QuietHoursSchema | None = None
    limits: LimitsSchema | None = None
    address: str | None = None


class PreferencesUpdate(BaseModel):
    """Schema for replacing a user's preferences."""

    timezone: str = "UTC"
    channels: dict[ChannelType, ChannelPreferenceSchema] = Field(default_factory=dict)
    global_quiet_hours: QuietHoursSchema | None = None
    global_limits: LimitsSchema | None = None


@router.get("/{user_id}/preferences")
async def get_preferences(
    user_id: str,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    prefs = await pipeline.get_preferences(user_id)
    return prefs.to_dict()


@router.put("/{user_id}/preferences")
async def put_preferences(
    user_id: str,
    update: PreferencesUpdate,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    if not is_valid_timezone(update.timezone):
        raise ValidationError(
            "Invalid preferences",
            [{"field": "timezone", "message": f"unknown timezone {update.timezone!r}"}],
        )

    data = update.model_dump(mode="json")
    data["user_id"] = user_id
    try:
        prefs = UserPreference.from_dict(data)
    except ValueError as e:
        raise ValidationError("Invalid preferences", [{"field": "quiet_hours", "message": str(e)}])

    saved = await pipeline.save_preferences(prefs)
    return {"status": "updated", "preferences": saved.to_dict()}
