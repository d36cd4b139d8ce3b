"""
Onelyid — Embedded Database
=============================

What:  Async SQLAlchemy engine creation, the declarative base, and the
       programmatic alembic upgrade used by bootstrap.
How:   SQLite through the aiosqlite driver. One engine per middleware
       instance, created by the bootstrap task (never at import time).
Who:   ``onelyid.bootstrap`` (open + migrate), ``onelyid.services.store``
       (queries), alembic's ``env.py`` (metadata).

Storage Location:
    Explicit ``OnelyidConfig.db_path`` wins. Otherwise the platform data
    directory is used:
        Linux/macOS:  $XDG_DATA_HOME/onelyid/onelyid.sqlite3
                      (~/.local/share/onelyid/onelyid.sqlite3 when unset)
        Windows:      %LOCALAPPDATA%\\onelyid\\onelyid.sqlite3
    ":memory:" keeps everything in a single shared in-process connection.
"""

import logging
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from onelyid.exceptions import StorageError

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

# Package-resource form so the migrations resolve from an installed wheel.
MIGRATIONS_LOCATION = "onelyid:migrations"


class Base(DeclarativeBase):
    """
    Base class for all onelyid ORM models.

    All models register on this metadata; alembic's env.py reads it.
    """
    pass


# ── Location ──────────────────────────────────────────────────────────────
def get_database_path() -> str:
    """Platform default location of the database file."""
    if sys.platform == "win32" and os.environ.get("LOCALAPPDATA"):
        base = Path(os.environ["LOCALAPPDATA"])
    elif os.environ.get("XDG_DATA_HOME"):
        base = Path(os.environ["XDG_DATA_HOME"])
    else:
        base = Path.home() / ".local" / "share"
    return str(base / "onelyid" / "onelyid.sqlite3")


def database_url(path: str) -> str:
    if path == MEMORY_PATH:
        return "sqlite+aiosqlite://"
    return f"sqlite+aiosqlite:///{path}"


# ── Engine ────────────────────────────────────────────────────────────────
def create_db(path: str) -> AsyncEngine:
    """
    Open (or create) the database at ``path``.

    The file itself is created lazily by SQLite on first connect; this only
    ensures the parent directory exists.

    Raises:
        StorageError: the parent directory cannot be created.
    """
    if path == MEMORY_PATH:
        # A memory database lives as long as its connection: share one.
        return create_async_engine(
            database_url(path),
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    try:
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(
            "Could not create the database directory",
            context={"path": path, "error": str(e)},
        ) from e

    logger.debug("Opening database at %s", path)
    return create_async_engine(database_url(str(Path(path).expanduser())))


async def dispose_engine(engine: AsyncEngine) -> None:
    """Close all pooled connections. Called from the middleware shutdown hook."""
    await engine.dispose()


# ── Migrations ────────────────────────────────────────────────────────────
def _alembic_config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", MIGRATIONS_LOCATION)
    return cfg


def _upgrade(connection, revision: str) -> None:
    cfg = _alembic_config()
    # env.py picks the live connection up instead of building its own engine
    cfg.attributes["connection"] = connection
    command.upgrade(cfg, revision)


async def migrate_to_latest(engine: AsyncEngine) -> None:
    """
    Apply all pending migrations. Safe to call on an up-to-date database.

    Raises:
        StorageError: a migration failed; the transaction is rolled back.
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(_upgrade, "head")
    except SQLAlchemyError as e:
        raise StorageError(
            "Database migration failed",
            context={"error": str(e)},
        ) from e
