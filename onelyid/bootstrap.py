"""
Onelyid — Bootstrap Controller
================================

What:  The one-time asynchronous sequence that prepares the middleware's
       stateful dependencies.
When:  Started as a background task as soon as an event loop is available
       (middleware construction, or the first ASGI message). Never awaited
       on the request path: the request gate only polls ``state``.

State Machine:

    PENDING ──all steps succeed──▶ READY    (terminal)
       │
       └────any step raises─────▶ FAILED   (terminal, error recorded)

Sequence:
    1. open    : create/open the SQLite database (configured or default path)
    2. migrate : alembic upgrade to head; failure aborts the sequence
    3. secret  : fetch-or-generate the cookie secret (only if none configured)
    4. resolver: build the bidirectional identity resolver

There is no retry: a FAILED instance stays failed until the process restarts.
"""

import asyncio
import enum
import logging
from typing import Optional

from onelyid.context import AppContext, RuntimeConfig
from onelyid.database import create_db, get_database_path, migrate_to_latest
from onelyid.exceptions import BootstrapError
from onelyid.services.id_resolver import create_bidirectional_resolver, create_id_resolver
from onelyid.services.store import get_or_create_cookie_secret

logger = logging.getLogger(__name__)


class BootstrapState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class BootstrapController:
    """Owns the bootstrap task and exposes its outcome as a pollable state."""

    def __init__(self, ctx: AppContext, runtime: RuntimeConfig):
        self.ctx = ctx
        self.runtime = runtime
        self.state = BootstrapState.PENDING
        self.error: Optional[BootstrapError] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Schedule the sequence on the running loop. Later calls are no-ops."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="onelyid-bootstrap"
        )

    async def wait(self) -> BootstrapState:
        """Await completion. For tests and shutdown, not for request handling."""
        if self._task is None:
            raise RuntimeError("bootstrap has not been started")
        await asyncio.shield(self._task)
        return self.state

    async def cancel(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        # Only a cancellation aimed at the caller propagates.
        await asyncio.wait({self._task})
        logger.info("Bootstrap cancelled before completion")

    async def _run(self) -> None:
        ctx = self.ctx
        step = "open"
        try:
            db_path = ctx.config.db_path or get_database_path()
            ctx.logger.info("Initializing onelyid (database: %s)", db_path)
            ctx.db = create_db(db_path)

            step = "migrate"
            await migrate_to_latest(ctx.db)

            step = "secret"
            if not self.runtime.cookie_secret:
                self.runtime.cookie_secret = await get_or_create_cookie_secret(ctx.db)

            step = "resolver"
            base_resolver = create_id_resolver(ctx.config)
            ctx.resolver = create_bidirectional_resolver(base_resolver)
        except Exception as e:
            error = BootstrapError(
                f"onelyid failed to initialize during '{step}'",
                step=step,
                context={"error_type": type(e).__name__, "error": str(e)},
            )
            error.__cause__ = e
            self.error = error
            self.state = BootstrapState.FAILED
            ctx.logger.error("onelyid initialization failed at step %s", step, exc_info=e)
            return

        self.state = BootstrapState.READY
        ctx.logger.info("onelyid initialized")
