"""Alembic environment for the notification pipeline schema."""

import os
import sys
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine, pool

# Project root on the path so `core` imports resolve when run via the alembic CLI
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# .env.local overrides .env
load_dotenv(".env")
load_dotenv(".env.local", override=True)

from core.database import get_sync_database_url
from core.tables import metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = metadata


def include_object(obj, name, type_, reflected, compare_to):
    """Autogenerate only manages tables this project defines."""
    if type_ == "table" and reflected and compare_to is None:
        return name in metadata.tables
    return True


def run_migrations_offline() -> None:
    """Emit the migration SQL without a database connection."""
    context.configure(
        url=get_sync_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations against DATABASE_URL."""
    connectable = create_engine(get_sync_database_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            include_object=include_object,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
