"""
Onelyid — Storage Models
==========================

What:  ORM models for the three tables the middleware owns.
Who:   ``onelyid.services.store`` for queries; alembic revision 001 creates them.

Tables:
    cookie_secret  single row (id = 1) holding the generated signing secret
    auth_state     in-flight authorization requests, keyed by OAuth ``state``
    auth_session   token sets of completed logins, keyed by DID
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from onelyid.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CookieSecret(Base):
    """
    The durable cookie-signing secret.

    Only one row ever exists. Concurrent creators insert with
    ``ON CONFLICT DO NOTHING`` on the fixed primary key, so the first
    writer's value is the one every caller reads back.
    """

    __tablename__ = "cookie_secret"

    SINGLETON_ID = 1

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    secret: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<CookieSecret(id={self.id}, created_at='{self.created_at}')>"


class AuthState(Base):
    """
    An authorization request waiting for its callback.

    ``value`` is the JSON-encoded PKCE verifier, expected DID, issuer and
    token endpoint. Rows are deleted when the callback consumes them.
    """

    __tablename__ = "auth_state"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_auth_state_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuthState(key='{self.key}')>"


class AuthSession(Base):
    """Token set of a signed-in DID (JSON-encoded), replaced on each login."""

    __tablename__ = "auth_session"

    key: Mapped[str] = mapped_column(String(2048), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<AuthSession(key='{self.key}')>"
