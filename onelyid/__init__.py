"""
Onelyid — Package Initializer
===============================

What: Embeddable ASGI middleware that delegates user login to AT Protocol
      OAuth (handle/DID based identities).
Who:  Imported by host applications:

        from onelyid import OnelyidConfig, OnelyidMiddleware

        app.add_middleware(OnelyidMiddleware, config=OnelyidConfig())

Architecture Note:

    ┌─────────────────────────────────────┐
    │     Middleware (request gate)       │  ← 503 / error / route dispatch
    ├─────────────────────────────────────┤
    │     Routes (login, callback, ...)   │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │     Services (OAuth, resolver,      │  ← external protocol collaborators
    │     session, storage queries)       │
    ├─────────────────────────────────────┤
    │     Database (SQLite + alembic)     │  ← created lazily by bootstrap
    └─────────────────────────────────────┘
"""

__version__ = "0.3.0"

from onelyid.config import OnelyidConfig
from onelyid.exceptions import (
    BootstrapError,
    ConfigurationError,
    OAuthCallbackError,
    OAuthError,
    OAuthResolverError,
    OnelyidError,
)
from onelyid.middleware.gate import OnelyidMiddleware
from onelyid.urls import DEFAULT_MOUNT_PATH, INVALID

__all__ = [
    "__version__",
    "BootstrapError",
    "ConfigurationError",
    "DEFAULT_MOUNT_PATH",
    "INVALID",
    "OAuthCallbackError",
    "OAuthError",
    "OAuthResolverError",
    "OnelyidConfig",
    "OnelyidError",
    "OnelyidMiddleware",
]
