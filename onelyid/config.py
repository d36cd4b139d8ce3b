"""
Onelyid — Middleware Configuration
====================================

What:  Options accepted by ``OnelyidMiddleware``, loaded with Pydantic Settings.
How:   Every field can be passed as a keyword argument or read from an
       ``ONELYID_``-prefixed environment variable (or a .env file):

           OnelyidConfig(public_url="https://example.com", mount_path="/auth")
           ONELYID_PUBLIC_URL=https://example.com  ->  OnelyidConfig()

Validation split:
    Pydantic checks types and numeric ranges when the config is built.
    URL and path *semantics* are checked by the middleware constructor through
    ``onelyid.urls`` so that a malformed public URL becomes a 503 on live
    requests instead of an import-time crash.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class OnelyidConfig(BaseSettings):
    """
    Middleware options. All optional; defaults suit local development.

    Attributes are grouped by concern for readability.
    """

    # ── Middleware Options ────────────────────────────────────────────────
    # Storage file for the embedded SQLite database. Platform default if unset.
    db_path: Optional[str] = Field(default=None)

    # Cookie signing secret. When unset, one is generated once and kept in the database.
    cookie_secret: Optional[str] = Field(default=None)

    # Externally reachable base URL. When unset, detected from the first request.
    public_url: Optional[str] = Field(default=None)

    # Sub-path the four routes are served under (default: /oauth).
    mount_path: Optional[str] = Field(default=None)

    # Where the browser lands after a successful login (default: <prefix>/userinfo).
    login_redirect: Optional[str] = Field(default=None)

    # Injected logger. ``onelyid.log.get_console_logger()`` when unset.
    logger: Optional[logging.Logger] = Field(default=None, exclude=True)

    # ── Identity Resolution ───────────────────────────────────────────────
    plc_directory_url: str = Field(default="https://plc.directory")
    appview_url: str = Field(default="https://public.api.bsky.app")
    resolver_cache_ttl: int = Field(default=3600, ge=0, le=86400)
    resolver_cache_maxsize: int = Field(default=1024, ge=0)

    # ── OAuth Client ──────────────────────────────────────────────────────
    oauth_scope: str = Field(default="atproto transition:generic")
    client_name: str = Field(default="onelyid")

    # ── Session Cookie ────────────────────────────────────────────────────
    session_cookie_name: str = Field(default="sid", min_length=1)
    session_max_age: int = Field(default=14 * 24 * 3600, ge=60)

    # ── Outbound HTTP ─────────────────────────────────────────────────────
    http_timeout: float = Field(default=10.0, ge=1, le=60)
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_wait: float = Field(default=0.5, ge=0, le=30)
    retry_max_wait: float = Field(default=5.0, ge=0, le=120)

    # ── Logging ───────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    model_config = {
        "env_prefix": "ONELYID_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "arbitrary_types_allowed": True,
    }
