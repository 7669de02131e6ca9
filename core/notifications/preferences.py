"""Preference source - per-user channel settings read by policy and delivery."""

import copy
from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from core.notifications.errors import InfrastructureError
from core.notifications.models import UserPreference, utcnow
from core.tables import user_preferences


class PreferenceSource(ABC):
    @abstractmethod
    async def get_preferences(self, user_id: str) -> UserPreference | None:
        """Return the user's preferences, or None if the user is unknown."""

    @abstractmethod
    async def save_preferences(self, prefs: UserPreference) -> UserPreference:
        ...


class InMemoryPreferenceSource(PreferenceSource):
    def __init__(self, preferences: list[UserPreference] | None = None):
        self._prefs = {p.user_id: p for p in preferences or []}

    async def get_preferences(self, user_id):
        return self._prefs.get(user_id)

    async def save_preferences(self, prefs):
        self._prefs[prefs.user_id] = copy.deepcopy(prefs)
        return prefs


class SqlPreferenceSource(PreferenceSource):
    """Preferences stored as one JSONB document per user."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def get_preferences(self, user_id):
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    select(user_preferences).where(user_preferences.c.user_id == user_id)
                )
                row = result.mappings().first()
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Failed to load preferences for {user_id}: {e}") from e
        return UserPreference.from_dict(dict(row)) if row else None

    async def save_preferences(self, prefs):
        data = prefs.to_dict()
        values = {
            "timezone": data["timezone"],
            "channels": data["channels"],
            "global_quiet_hours": data["global_quiet_hours"],
            "global_limits": data["global_limits"],
            "updated_at": utcnow(),
        }
        statement = pg_insert(user_preferences).values(user_id=prefs.user_id, **values)
        statement = statement.on_conflict_do_update(
            index_elements=[user_preferences.c.user_id], set_=values
        )
        try:
            async with self._engine.begin() as conn:
                await conn.execute(statement)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Failed to save preferences for {prefs.user_id}: {e}") from e
        return prefs
