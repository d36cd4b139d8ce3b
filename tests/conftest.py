"""
Onelyid — Test Configuration (conftest.py)
============================================

What:  Shared pytest fixtures for the test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── config:             OnelyidConfig pointing at a SQLite file in tmp_path
    ├── engine:             migrated AsyncEngine on that file
    ├── mock_resolver:      BidirectionalResolver stand-in (AsyncMock)
    ├── mock_oauth_client:  OAuthClient stand-in
    ├── make_gate:          factory for OnelyidMiddleware instances whose
    │                       bootstrap runs against the real database but
    │                       with the resolver and OAuth client mocked
    ├── gate:               make_gate() with default config, bootstrapped
    └── client:             HTTPX AsyncClient talking to ``gate``
"""

import logging
import os
from contextlib import ExitStack
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

# Override settings for testing BEFORE any onelyid imports
os.environ["ONELYID_LOG_LEVEL"] = "WARNING"
for _name in ("ONELYID_PUBLIC_URL", "ONELYID_MOUNT_PATH", "ONELYID_COOKIE_SECRET",
              "ONELYID_DB_PATH", "ONELYID_LOGIN_REDIRECT"):
    os.environ.pop(_name, None)

from onelyid.config import OnelyidConfig  # noqa: E402
from onelyid.database import create_db, dispose_engine, migrate_to_latest  # noqa: E402
from onelyid.middleware.gate import OnelyidMiddleware  # noqa: E402

TEST_LOGGER = logging.getLogger("onelyid.tests")

CLIENT_METADATA = {
    "client_id": "http://test/oauth/client-metadata.json",
    "redirect_uris": ["http://test/oauth/callback"],
}


# ══════════════════════════════════════════════════════════════════════════
# Host Application
# ══════════════════════════════════════════════════════════════════════════

async def host_home(request: Request):
    return PlainTextResponse("host home")


async def host_echo_state(request: Request):
    ctx = getattr(request.state, "onelyid", None)
    return PlainTextResponse("context" if ctx is not None else "no context")


def build_host_app() -> Starlette:
    """The application the middleware wraps in tests."""
    return Starlette(routes=[
        Route("/", host_home),
        Route("/state", host_echo_state),
    ])


# ══════════════════════════════════════════════════════════════════════════
# Configuration & Storage
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "onelyid.sqlite3")


@pytest.fixture
def config(db_path):
    """Default middleware options for tests (no public URL, default mount path)."""
    return OnelyidConfig(
        db_path=db_path,
        logger=TEST_LOGGER,
        retry_min_wait=0,
        retry_max_wait=0,
    )


@pytest_asyncio.fixture
async def engine(db_path):
    """A migrated database in tmp_path."""
    engine = create_db(db_path)
    await migrate_to_latest(engine)
    yield engine
    await dispose_engine(engine)


# ══════════════════════════════════════════════════════════════════════════
# Collaborator Mocks
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_resolver():
    """
    Stand-in for BidirectionalResolver.

    Usage:
        mock_resolver.resolve_did_to_handle.return_value = "alice.example.com"
    """
    resolver = MagicMock()
    resolver.resolve_handle = AsyncMock(return_value="did:plc:alice")
    resolver.resolve_did_to_handle = AsyncMock(return_value="alice.example.com")
    resolver.fetch_profile = AsyncMock(return_value=None)
    resolver.aclose = AsyncMock()
    return resolver


@pytest.fixture
def mock_oauth_client():
    client = MagicMock()
    client.client_metadata = dict(CLIENT_METADATA)
    client.authorize = AsyncMock(return_value="https://auth.example.com/authorize?request_uri=x")
    client.callback = AsyncMock()
    client.aclose = AsyncMock()
    return client


# ══════════════════════════════════════════════════════════════════════════
# Middleware & HTTP Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def make_gate(config, mock_resolver, mock_oauth_client):
    """
    Factory for bootstrapped middleware instances.

    Usage:
        gate = await make_gate(mount_path="/auth")
        gate = await make_gate(wait=False)   # bootstrap may still be pending

    Keyword arguments override fields of the ``config`` fixture. Patches stay
    active for the whole test so late bootstrap steps see them too.
    """
    stack = ExitStack()
    create_client = AsyncMock(return_value=mock_oauth_client)
    stack.enter_context(patch("onelyid.bootstrap.create_id_resolver", return_value=MagicMock()))
    stack.enter_context(
        patch("onelyid.bootstrap.create_bidirectional_resolver", return_value=mock_resolver)
    )
    stack.enter_context(patch("onelyid.middleware.gate.create_client", create_client))
    gates = []

    async def factory(wait: bool = True, app=None, **overrides):
        gate_config = config.model_copy(update=overrides)
        gate = OnelyidMiddleware(app or build_host_app(), config=gate_config)
        gate.create_client_mock = create_client
        gates.append(gate)
        if wait:
            await gate.bootstrap.wait()
        return gate

    yield factory

    for gate in gates:
        await gate.aclose()
    stack.close()


@pytest_asyncio.fixture
async def gate(make_gate):
    return await make_gate()


def http_client(app, base_url: str = "http://test", **transport_kwargs) -> AsyncClient:
    transport = ASGITransport(app=app, **transport_kwargs)
    return AsyncClient(transport=transport, base_url=base_url)


@pytest_asyncio.fixture
async def client(gate):
    """
    HTTPX AsyncClient routed straight into the middleware.

    Usage:
        async def test_userinfo(client):
            response = await client.get("/oauth/userinfo")
    """
    async with http_client(gate) as c:
        yield c
