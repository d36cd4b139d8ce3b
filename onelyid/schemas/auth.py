"""
Onelyid — Pydantic Schemas
============================

What:  Data passed between the protocol client, the session layer and the
       route handlers, and the user payload rendered by ``/userinfo``.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ProfileView(BaseModel):
    """
    What:  Public view of the signed-in account.
    Who:   Returned by GET <prefix>/userinfo as ``{"user": {...}}``.
    """
    did: str = Field(description="Durable account identifier")
    handle: str = Field(description="Verified handle, or the DID when none verifies")
    display_name: Optional[str] = Field(default=None, serialization_alias="displayName")
    avatar: Optional[str] = Field(default=None, description="Avatar image URL")

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class OAuthSession(BaseModel):
    """Identity established by a completed authorization code exchange."""
    did: str
    scope: Optional[str] = None


class CallbackResult(BaseModel):
    """Result of ``OAuthClient.callback``."""
    session: OAuthSession
    state: Optional[str] = None


class SessionUser(BaseModel):
    """
    Three-way result of looking up the current user:

        user=None, error=None  → no session (not logged in)
        user=None, error="..." → session present, lookup failed
        user=ProfileView       → logged in
    """
    user: Optional[ProfileView] = None
    error: Optional[str] = None
