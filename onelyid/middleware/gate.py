"""
Onelyid — Request Gate Middleware
===================================

What:  ``OnelyidMiddleware``, the ASGI middleware a host application adds to
       get AT Protocol login routes.
How:   A Starlette ``BaseHTTPMiddleware``. Bootstrap runs as a background task;
       every HTTP request walks the gate below before it reaches either one of
       the onelyid routes or the wrapped host application.

Gate (evaluated in order; each step short-circuits or falls through):

    1. bootstrap FAILED      → raise the recorded BootstrapError (host error channel)
    2. bootstrap PENDING     → 503 "Service initializing"
    3. public URL unknown    → detect from Host header + scheme, else loopback
    4. public URL INVALID    → 503 with a configuration hint
    5. base path unknown     → prefix from ASGI root_path + mount path
    6. routes not registered → register once, then freeze the runtime config
    7. no OAuth client       → build it from the frozen runtime config
    8. publish the context and the JSON renderer on ``request.state``;
       dispatch to a matching onelyid route, or to the host app

Concurrency:
    Steps 3 to 6 contain no await, so under asyncio they run to completion
    for one request before another request can enter them. Step 7 awaits; two
    early requests may both build a client, and the first one stored wins.

Usage:
    app = FastAPI()
    app.add_middleware(OnelyidMiddleware, config=OnelyidConfig(mount_path="/auth"))

    # or wrap any ASGI app directly
    app = OnelyidMiddleware(app, config=OnelyidConfig())
"""

import asyncio
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Match, Router
from starlette.types import ASGIApp, Receive, Scope, Send

from onelyid.bootstrap import BootstrapController, BootstrapState
from onelyid.config import OnelyidConfig
from onelyid.context import AppContext, RuntimeConfig
from onelyid.database import dispose_engine
from onelyid.log import get_console_logger
from onelyid.routes.auth import RouteRegistrar
from onelyid.routes.responses import PrettyJSONResponse
from onelyid.services.oauth_client import create_client
from onelyid.urls import (
    INVALID,
    detect_public_url,
    loopback_url,
    normalize_mount_path,
    normalize_path,
    normalize_public_url,
)

INITIALIZING_MESSAGE = "Service initializing"
INVALID_PUBLIC_URL_MESSAGE = "Invalid publicUrl provided! Valid example: https://example.com"


class OnelyidMiddleware(BaseHTTPMiddleware):
    """
    Gates all HTTP traffic on bootstrap and serves the onelyid routes.

    Raises (from the constructor):
        ConfigurationError: malformed ``mount_path`` or ``login_redirect``.
    """

    def __init__(self, app: ASGIApp, config: Optional[OnelyidConfig] = None):
        super().__init__(app)
        self.config = config or OnelyidConfig()

        # Static configuration: paths fail loudly here, the URL never does.
        mount_path = normalize_mount_path(self.config.mount_path)
        self.login_redirect = normalize_path(self.config.login_redirect, field="login_redirect")
        public_url = normalize_public_url(self.config.public_url)

        self.runtime = RuntimeConfig(
            cookie_secret=self.config.cookie_secret or "",
            public_url=public_url,
            mount_path=mount_path,
        )
        if public_url and public_url != INVALID:
            self.runtime.base_url = public_url

        self.ctx = AppContext(
            config=self.config,
            logger=self.config.logger or get_console_logger(self.config.log_level),
        )
        if public_url == INVALID:
            self.ctx.logger.error(
                "Invalid public_url %r; requests will receive 503 until it is fixed",
                self.config.public_url,
            )

        self.router = Router()
        self.registrar = RouteRegistrar(self.router, self.ctx, self.runtime, self.login_redirect)
        self.bootstrap = BootstrapController(self.ctx, self.runtime)

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet (module-level app construction): start on the first ASGI call.
            pass
        else:
            self.bootstrap.start()

    # ══════════════════════════════════════════════════════════════════════
    # ASGI entry
    # ══════════════════════════════════════════════════════════════════════

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self.bootstrap.started:
            self.bootstrap.start()

        if scope["type"] == "lifespan":
            await self.app(scope, self._watch_lifespan(receive), send)
            return

        await super().__call__(scope, receive, send)

    def _watch_lifespan(self, receive: Receive) -> Receive:
        async def wrapped():
            message = await receive()
            if message["type"] == "lifespan.shutdown":
                await self.aclose()
            return message
        return wrapped

    async def aclose(self) -> None:
        """
        Shutdown hook: stop a running bootstrap and release every resource.

        Called automatically on ASGI ``lifespan.shutdown``; safe to call twice.
        """
        await self.bootstrap.cancel()
        if self.ctx.oauth_client is not None:
            await self.ctx.oauth_client.aclose()
        if self.ctx.resolver is not None:
            await self.ctx.resolver.aclose()
        if self.ctx.db is not None:
            await dispose_engine(self.ctx.db)
        self.ctx.logger.info("onelyid shut down")

    # ══════════════════════════════════════════════════════════════════════
    # Gate
    # ══════════════════════════════════════════════════════════════════════

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if self.bootstrap.state is BootstrapState.FAILED:
            raise self.bootstrap.error.with_traceback(None)

        if self.bootstrap.state is BootstrapState.PENDING:
            return PlainTextResponse(INITIALIZING_MESSAGE, status_code=503)

        if not self.runtime.public_url:
            self._detect_public_url(request)

        if self.runtime.public_url == INVALID:
            return PlainTextResponse(INVALID_PUBLIC_URL_MESSAGE, status_code=503)

        if not self.runtime.base_path:
            self._resolve_prefix(request)

        if not self.registrar.registered:
            self.registrar.register()
            self.runtime.freeze()
            self.ctx.logger.debug("onelyid runtime config: %s", self.runtime.as_dict())

        if self.ctx.oauth_client is None:
            client = await create_client(self.ctx, self.runtime)
            if self.ctx.oauth_client is None:
                self.ctx.oauth_client = client
            else:
                await client.aclose()

        request.state.onelyid = self.ctx
        request.state.render_json = PrettyJSONResponse

        for route in self.router.routes:
            match, child_scope = route.matches(request.scope)
            if match is Match.FULL:
                request.scope.update(child_scope)
                return await route.endpoint(request)

        return await call_next(request)

    def _detect_public_url(self, request: Request) -> None:
        host = request.headers.get("host")
        detected = detect_public_url(host, request.url.scheme)
        if detected:
            self.ctx.logger.info("Detected public URL %s", detected)
        else:
            detected = loopback_url(host)
            self.ctx.logger.warning(
                "Could not derive a public URL from Host %r; using %s", host, detected
            )
        self.runtime.public_url = detected
        self.runtime.base_url = detected

    def _resolve_prefix(self, request: Request) -> None:
        # root_path is the prefix the host framework mounted us under, if any
        root_path = request.scope.get("root_path", "").rstrip("/")
        mount_path = self.runtime.mount_path
        self.runtime.prefix_path = f"{root_path}{mount_path}"
        self.runtime.prefix_route = mount_path
        self.runtime.base_path = f"{self.runtime.base_url}{self.runtime.prefix_path}"
