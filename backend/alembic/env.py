"""
Alembic Migration Environment
===============================

What:  Runs Chapterly schema migrations through the async SQLAlchemy engine.
Why:   Supabase owns the production schema, but local Postgres and staging
       databases are built from these revisions so the ORM models and the
       real tables never drift apart.
How:   Pulls the URL from chapterly.config and the metadata from
       chapterly.database.Base, then hands a sync connection to Alembic via
       connection.run_sync().
When:  `alembic upgrade head` from the backend/ directory.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context

from chapterly.config import settings
from chapterly.database import Base

# Registered with Base.metadata on import, needed for --autogenerate
from chapterly.models.account import GuestAccount, UserAccount  # noqa: F401
from chapterly.models.book import Book, Chapter  # noqa: F401
from chapterly.models.transaction import RedeemedTransaction  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Settings are the single source of the database URL, not alembic.ini
config.set_main_option("sqlalchemy.url", settings.database_url)


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """
    Apply pending revisions over an async connection.

    NullPool: a migration run opens exactly one connection and exits.
    """
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
