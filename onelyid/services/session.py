"""
Onelyid — Cookie Session
==========================

What:  The browser session: a signed cookie holding the signed-in DID.
How:   itsdangerous ``URLSafeTimedSerializer`` keyed by the cookie secret,
       the same signer Starlette's SessionMiddleware uses. Nothing but the
       DID is stored client-side; OAuth tokens stay in the auth_session table.

Cookie attributes:
    HttpOnly, SameSite=Lax, Path=/, Max-Age=session_max_age,
    Secure when the public URL is https (the request scheme when no
    public URL is given).

A cookie that fails signature or age checks is treated as no session at all.
"""

import logging
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from starlette.requests import Request
from starlette.responses import Response

from onelyid.context import AppContext
from onelyid.exceptions import IdentityResolutionError
from onelyid.schemas.auth import ProfileView, SessionUser

logger = logging.getLogger(__name__)

SESSION_SALT = "onelyid.session"
DEFAULT_COOKIE_NAME = "sid"
DEFAULT_MAX_AGE = 14 * 24 * 3600


class CookieSession:
    """
    A loaded session. Assign ``did`` and ``await save()`` to persist it on the
    response the session was opened with.
    """

    def __init__(
        self,
        request: Request,
        response: Optional[Response],
        serializer: URLSafeTimedSerializer,
        cookie_name: str,
        max_age: int,
        data: Dict[str, Any],
        secure: Optional[bool] = None,
    ):
        self._request = request
        self._secure = secure
        self._response = response
        self._serializer = serializer
        self._cookie_name = cookie_name
        self._max_age = max_age
        did = data.get("did")
        self.did: Optional[str] = did if isinstance(did, str) and did else None

    @property
    def secure(self) -> bool:
        if self._secure is not None:
            return self._secure
        return self._request.url.scheme == "https"

    async def save(self) -> None:
        if self._response is None:
            raise RuntimeError("Session was opened without a response and cannot be saved")
        self._response.set_cookie(
            self._cookie_name,
            self._serializer.dumps({"did": self.did}),
            max_age=self._max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )


async def get_session(
    request: Request,
    response: Optional[Response],
    cookie_secret: str,
    *,
    cookie_name: str = DEFAULT_COOKIE_NAME,
    max_age: int = DEFAULT_MAX_AGE,
    secure: Optional[bool] = None,
) -> CookieSession:
    """
    Open the caller's session; an empty one when there is no valid cookie.

    ``secure`` sets the cookie's Secure attribute on save. When omitted it
    follows the request scheme, which is http behind a TLS-terminating proxy.
    """
    serializer = URLSafeTimedSerializer(cookie_secret, salt=SESSION_SALT)
    data: Dict[str, Any] = {}
    raw = request.cookies.get(cookie_name)
    if raw:
        try:
            loaded = serializer.loads(raw, max_age=max_age)
        except BadSignature:
            # SignatureExpired is a subclass
            logger.debug("Ignoring session cookie with a bad or expired signature")
        else:
            if isinstance(loaded, dict):
                data = loaded
    return CookieSession(
        request, response, serializer, cookie_name, max_age, data, secure=secure
    )


async def get_session_user(
    request: Request,
    ctx: AppContext,
    cookie_secret: str,
) -> SessionUser:
    """
    Look up the signed-in user.

    Returns:
        SessionUser() when not logged in, SessionUser(error=...) when the
        session's DID cannot be resolved, SessionUser(user=...) otherwise.
    """
    session = await get_session(
        request,
        None,
        cookie_secret,
        cookie_name=ctx.config.session_cookie_name,
        max_age=ctx.config.session_max_age,
    )
    if not session.did:
        return SessionUser()

    did = session.did
    try:
        handle = await ctx.resolver.resolve_did_to_handle(did)
    except IdentityResolutionError as e:
        ctx.logger.warning("userinfo lookup failed for %s: %s", did, e.message)
        return SessionUser(error=e.message)
    except Exception:
        ctx.logger.error("userinfo lookup failed for %s", did, exc_info=True)
        return SessionUser(error="couldn't load user")

    profile = await ctx.resolver.fetch_profile(did) or {}
    return SessionUser(
        user=ProfileView(
            did=did,
            handle=handle,
            display_name=profile.get("displayName") or None,
            avatar=profile.get("avatar") or None,
        )
    )
