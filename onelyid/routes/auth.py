"""
Onelyid — Auth Route Handlers
===============================

What:  The four user-facing endpoints and the registrar that binds them.
How:   Handlers are closures over the middleware's ``AppContext`` and
       ``RuntimeConfig``. They read both by reference, so they see the values
       frozen by the gate, including the OAuth client built after registration.

Error policy per endpoint:
    login     invalid handle / resolver failure → JSON ``{"error": ...}`` (200)
    callback  any failure → logged, 302 to ``/?error`` (no detail to the browser)
    userinfo  ``{"user": null, "info": ...}`` or ``{"user": null, "error": ...}``
"""

from urllib.parse import parse_qsl

from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.routing import Route, Router

from onelyid.context import AppContext, RuntimeConfig
from onelyid.exceptions import OAuthResolverError
from onelyid.routes.responses import PrettyJSONResponse
from onelyid.services.session import get_session, get_session_user
from onelyid.syntax import is_valid_handle

CALLBACK_ERROR_REDIRECT = "/?error"


def register_routes(
    router: Router,
    ctx: AppContext,
    runtime: RuntimeConfig,
    login_redirect: str = "",
) -> None:
    """Bind the endpoints under ``runtime.prefix_route``."""
    prefix = runtime.prefix_route

    # ── OAuth metadata ────────────────────────────────────────────────────
    async def client_metadata(request: Request) -> Response:
        return PrettyJSONResponse(ctx.oauth_client.client_metadata)

    # ── OAuth callback to complete session creation ───────────────────────
    async def callback(request: Request) -> Response:
        params = dict(parse_qsl(request.url.query, keep_blank_values=True))
        response = RedirectResponse(
            login_redirect or f"{runtime.prefix_path}/userinfo",
            status_code=302,
        )
        try:
            result = await ctx.oauth_client.callback(params)
            session = await get_session(
                request,
                response,
                runtime.cookie_secret,
                cookie_name=ctx.config.session_cookie_name,
                max_age=ctx.config.session_max_age,
                secure=runtime.public_url.startswith("https://"),
            )
            session.did = result.session.did
            await session.save()
        except Exception:
            ctx.logger.error("oauth callback failed", exc_info=True)
            return RedirectResponse(CALLBACK_ERROR_REDIRECT, status_code=302)
        return response

    # ── Login ─────────────────────────────────────────────────────────────
    async def login(request: Request) -> Response:
        handle = request.query_params.get("handle")
        if handle is None or not is_valid_handle(handle):
            return PrettyJSONResponse({"handle": handle or "", "error": "invalid handle"})

        try:
            url = await ctx.oauth_client.authorize(handle, scope=ctx.config.oauth_scope)
        except Exception as e:
            ctx.logger.error("oauth authorize failed", exc_info=True)
            if isinstance(e, OAuthResolverError):
                return PrettyJSONResponse({"error": e.message})
            return PrettyJSONResponse({"error": "couldn't initiate login"})
        return RedirectResponse(str(url), status_code=302)

    # ── User info for the current session ─────────────────────────────────
    async def userinfo(request: Request) -> Response:
        result = await get_session_user(request, ctx, runtime.cookie_secret)
        if result.user is None and result.error is None:
            return PrettyJSONResponse({"user": None, "info": "not logged-in"})
        if result.user is None:
            return PrettyJSONResponse({"user": None, "error": result.error})
        return PrettyJSONResponse({"user": result.user.to_json()})

    router.routes.extend([
        Route(f"{prefix}/client-metadata.json", client_metadata, methods=["GET"],
              name="onelyid:client_metadata"),
        Route(f"{prefix}/callback", callback, methods=["GET"], name="onelyid:callback"),
        Route(f"{prefix}/login", login, methods=["GET"], name="onelyid:login"),
        Route(f"{prefix}/userinfo", userinfo, methods=["GET"], name="onelyid:userinfo"),
    ])


class RouteRegistrar:
    """Runs ``register_routes`` exactly once per middleware instance."""

    def __init__(
        self,
        router: Router,
        ctx: AppContext,
        runtime: RuntimeConfig,
        login_redirect: str = "",
    ):
        self.router = router
        self.ctx = ctx
        self.runtime = runtime
        self.login_redirect = login_redirect
        self.registered = False

    def register(self) -> bool:
        """Bind the routes; False when they were already bound."""
        if self.registered:
            return False
        register_routes(self.router, self.ctx, self.runtime, self.login_redirect)
        self.registered = True
        self.ctx.logger.info(
            "onelyid routes registered under %s",
            self.runtime.prefix_route or "/",
        )
        return True
