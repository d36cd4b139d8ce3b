"""
Onelyid — Storage Queries
===========================

What:  The queries the middleware runs against its embedded database.
Who:   Bootstrap (``get_or_create_cookie_secret``) and the OAuth client
       (``StateStore`` / ``SessionStore``).

Atomicity:
    SQLite's ``INSERT ... ON CONFLICT`` gives us upserts in one statement.
    The cookie secret relies on it for first-writer-wins: every caller inserts
    its own candidate with DO NOTHING, then reads the surviving row.
"""

import json
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from onelyid.database import Base
from onelyid.exceptions import StorageError
from onelyid.models.auth import AuthSession, AuthState, CookieSecret

logger = logging.getLogger(__name__)


async def get_or_create_cookie_secret(engine: AsyncEngine) -> str:
    """
    Return the durable cookie secret, generating it on first use.

    Raises:
        StorageError: the database could not be read or written.
    """
    candidate = secrets.token_urlsafe(32)
    stmt = (
        sqlite_insert(CookieSecret)
        .values(id=CookieSecret.SINGLETON_ID, secret=candidate)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    try:
        async with engine.begin() as conn:
            await conn.execute(stmt)
            result = await conn.execute(
                select(CookieSecret.secret).where(CookieSecret.id == CookieSecret.SINGLETON_ID)
            )
            secret = result.scalar_one()
    except SQLAlchemyError as e:
        raise StorageError(
            "Could not load the cookie secret",
            context={"error": str(e)},
        ) from e

    if secret == candidate:
        logger.info("Generated a new cookie secret")
    return secret


class KeyValueStore:
    """
    JSON blobs keyed by string, backed by one of the auth tables.

    Subclasses only pick the model; the table must have ``key`` and ``value``
    columns.
    """

    model: Type[Base]

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(self.model.value).where(self.model.key == key)
                )
                raw = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Could not read from {self.model.__tablename__}",
                context={"key": key, "error": str(e)},
            ) from e
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value)
        stmt = sqlite_insert(self.model).values(key=key, value=payload)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_=self._update_columns(payload),
        )
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Could not write to {self.model.__tablename__}",
                context={"key": key, "error": str(e)},
            ) from e

    async def delete(self, key: str) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(delete(self.model).where(self.model.key == key))
        except SQLAlchemyError as e:
            raise StorageError(
                f"Could not delete from {self.model.__tablename__}",
                context={"key": key, "error": str(e)},
            ) from e

    def _update_columns(self, payload: str) -> Dict[str, Any]:
        return {"value": payload}


class StateStore(KeyValueStore):
    """Pending authorization requests. Each state is consumed exactly once."""

    model = AuthState

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Read and delete ``key`` in one transaction; None if it is unknown."""
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    select(AuthState.value).where(AuthState.key == key)
                )
                raw = result.scalar_one_or_none()
                if raw is not None:
                    await conn.execute(delete(AuthState).where(AuthState.key == key))
        except SQLAlchemyError as e:
            raise StorageError(
                "Could not consume authorization state",
                context={"error": str(e)},
            ) from e
        return json.loads(raw) if raw is not None else None

    async def delete_expired(self, max_age: timedelta) -> int:
        """Drop authorization requests older than ``max_age``. Returns the count."""
        cutoff = datetime.now(timezone.utc) - max_age
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(
                    delete(AuthState).where(AuthState.created_at < cutoff)
                )
        except SQLAlchemyError as e:
            raise StorageError(
                "Could not sweep expired authorization state",
                context={"error": str(e)},
            ) from e
        if result.rowcount:
            logger.debug("Swept %d expired authorization requests", result.rowcount)
        return result.rowcount or 0


class SessionStore(KeyValueStore):
    """OAuth token sets keyed by DID."""

    model = AuthSession

    def _update_columns(self, payload: str) -> Dict[str, Any]:
        # onupdate defaults are not applied to ON CONFLICT DO UPDATE
        return {"value": payload, "updated_at": datetime.now(timezone.utc)}
