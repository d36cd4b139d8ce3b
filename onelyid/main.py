"""
Onelyid — Demo Host Application
=================================

What:  A minimal FastAPI application that embeds ``OnelyidMiddleware``.
Why:   Shows the intended integration and gives ``uvicorn onelyid.main:app``
       something to serve during local development.

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │                                                     │
    │  Middleware:  OnelyidMiddleware (gate + routes)     │
    │                                                     │
    │  Routes:                                            │
    │  ┌──────────────┐ ┌──────────────────────────────┐  │
    │  │ GET /        │ │ GET /oauth/{client-metadata. │  │
    │  │ (host route) │ │ json,callback,login,userinfo}│  │
    │  └──────────────┘ └──────────────────────────────┘  │
    │                                                     │
    │  Exception Handlers:                                │
    │  ┌──────────────────────────────────────────────┐   │
    │  │ BootstrapError→500 │ OnelyidError→500 │ *→500│   │
    │  └──────────────────────────────────────────────┘   │
    └─────────────────────────────────────────────────────┘

Configuration comes from ``ONELYID_*`` environment variables, e.g.:

    ONELYID_PUBLIC_URL=https://example.com ONELYID_MOUNT_PATH=/auth \\
        uvicorn onelyid.main:app --port 4000
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from onelyid import __version__
from onelyid.config import OnelyidConfig
from onelyid.exceptions import BootstrapError, OnelyidError
from onelyid.log import setup_logging
from onelyid.middleware.gate import OnelyidMiddleware
from onelyid.urls import normalize_mount_path

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("onelyid demo host starting (version %s)", __version__)
    yield
    # OnelyidMiddleware releases its own resources on lifespan.shutdown.
    logger.info("onelyid demo host stopped")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register error responses for failures that reach the host application.

    Handler hierarchy:
        BootstrapError  → 500, generic message (raised by the gate on every
                          request once initialization has failed)
        OnelyidError    → 500, generic message
        Exception       → 500, generic message

    ``BootstrapError`` is raised from a middleware, outside FastAPI's
    per-route exception layer, so it is routed through the catch-all
    ``Exception`` handler, which Starlette installs on its outermost
    error middleware.

    Security: responses never include ``exc.context``; it is logged only.
    """

    @app.exception_handler(OnelyidError)
    async def handle_onelyid_error(request: Request, exc: OnelyidError):
        logger.error("onelyid error: %s | Context: %s", exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "message": "An internal error occurred. Please try again later.",
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        if isinstance(exc, BootstrapError):
            logger.error(
                "Authentication service unavailable: %s | Context: %s",
                exc.message,
                exc.context,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "service_unavailable",
                    "message": "The authentication service failed to start.",
                },
            )

        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred.",
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(config: Optional[OnelyidConfig] = None) -> FastAPI:
    """
    Create the demo FastAPI application.

    Args:
        config: Middleware options. Read from the environment when omitted.
    """
    config = config or OnelyidConfig()
    setup_logging(config.log_level)
    if config.logger is None:
        # Route onelyid logs through the root handlers configured above.
        config.logger = logging.getLogger("onelyid.demo")

    app = FastAPI(
        title="onelyid demo",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(OnelyidMiddleware, config=config)
    register_exception_handlers(app)

    mount_path = normalize_mount_path(config.mount_path)

    @app.get("/")
    async def home(request: Request):
        prefix = f"{request.scope.get('root_path', '')}{mount_path}"
        render_json = getattr(request.state, "render_json", JSONResponse)
        return render_json({
            "service": "onelyid demo",
            "login": f"{prefix}/login?handle=<your-handle>",
            "userinfo": f"{prefix}/userinfo",
            "error": "error" in request.query_params,
        })

    return app


app = create_app()
