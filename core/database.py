"""
Async engine management for the notification store.

The SQL store and preference source receive the engine from the pipeline
bootstrap in main.py; this module only owns its construction and disposal.
"""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .tables import metadata  # noqa: F401 - exported for Alembic

_engine: AsyncEngine | None = None


def _get_database_url() -> str:
    """Return DATABASE_URL rewritten for the asyncpg driver."""
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable must be set")

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return database_url


def get_engine() -> AsyncEngine:
    """Get or create the process-wide async engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            _get_database_url(),
            echo=os.environ.get("SQL_ECHO", "").lower() == "true",
            # One connection per topic worker plus scheduler and aggregator
            pool_size=int(os.environ.get("DB_POOL_SIZE", "10")),
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    return _engine


async def close_engine() -> None:
    """Dispose the engine and all pooled connections. Call on shutdown."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def is_configured() -> bool:
    """Check if database credentials are configured."""
    return bool(os.environ.get("DATABASE_URL"))


def get_sync_database_url() -> str:
    """Synchronous (psycopg2) URL for Alembic migrations."""
    database_url = os.environ.get("DATABASE_URL", "")

    if "postgresql+asyncpg://" in database_url:
        return database_url.replace("postgresql+asyncpg://", "postgresql://")
    if database_url.startswith("postgresql://"):
        return database_url

    raise ValueError("DATABASE_URL must be set for migrations")
