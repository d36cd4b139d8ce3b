"""
Onelyid — Shared Runtime State
================================

What:  The two mutable records a middleware instance owns and hands, by
       reference, to its route handlers.

RuntimeConfig field lifecycle:

    field          written by                    when
    ─────────────  ────────────────────────────  ──────────────────────────────
    mount_path     middleware constructor        construction
    public_url     constructor or request gate   construction / first request
    cookie_secret  constructor or bootstrap      construction / bootstrap
    base_url       constructor or request gate   construction / first request
    prefix_path    request gate                  first request
    prefix_route   request gate                  first request
    base_path      request gate                  first request

    Every field goes from "" to a value at most once. ``freeze()`` is called
    after route registration; from then on any assignment raises.

AppContext:
    db, resolver and oauth_client each go from None to an object at most once.
    Bootstrap failure is not stored here; see ``BootstrapController``.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from onelyid.config import OnelyidConfig

if TYPE_CHECKING:
    from onelyid.services.id_resolver import BidirectionalResolver
    from onelyid.services.oauth_base import OAuthClient


@dataclass
class RuntimeConfig:
    cookie_secret: str = ""
    public_url: str = ""
    mount_path: str = ""
    base_url: str = ""
    prefix_path: str = ""
    prefix_route: str = ""
    base_path: str = ""
    frozen: bool = field(default=False, repr=False)

    def __setattr__(self, name: str, value) -> None:
        if getattr(self, "frozen", False):
            raise AttributeError(f"RuntimeConfig is frozen; cannot set {name!r}")
        current = getattr(self, name, "")
        if name != "frozen" and current and value != current:
            raise AttributeError(
                f"RuntimeConfig.{name} is already resolved to {current!r}"
            )
        super().__setattr__(name, value)

    def freeze(self) -> None:
        super().__setattr__("frozen", True)

    def as_dict(self) -> dict:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in ("frozen", "cookie_secret")
        }


@dataclass
class AppContext:
    config: OnelyidConfig
    logger: logging.Logger
    db: Optional[AsyncEngine] = None
    resolver: Optional["BidirectionalResolver"] = None
    oauth_client: Optional["OAuthClient"] = None

    def __setattr__(self, name: str, value) -> None:
        if name in ("db", "resolver", "oauth_client"):
            current = getattr(self, name, None)
            if current is not None and value is not current:
                raise AttributeError(f"AppContext.{name} is already set")
        super().__setattr__(name, value)
