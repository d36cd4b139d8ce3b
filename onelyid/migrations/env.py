"""
Alembic Migration Environment
===============================

What:  Configures alembic for the onelyid SQLite database.
How:   Two entry paths:
       - Programmatic (bootstrap): ``onelyid.database.migrate_to_latest`` passes
         a live connection through ``config.attributes["connection"]``.
       - CLI: ``alembic -x db_path=/path/to/onelyid.sqlite3 upgrade head`` builds
         its own async engine (platform default path when -x is omitted).
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from onelyid.database import Base, database_url, get_database_path

# Import all models so alembic can detect them for --autogenerate
from onelyid.models import auth  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _cli_database_url() -> str:
    db_path = context.get_x_argument(as_dictionary=True).get("db_path")
    return database_url(db_path or get_database_path())


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting to the database."""
    context.configure(
        url=_cli_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    """Execute migrations against the provided connection."""
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        # SQLite cannot ALTER most constraints in place
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Connect with an async engine and apply pending migrations (CLI path)."""
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _cli_database_url()
    connectable = async_engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        do_run_migrations(connection)
        return
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
