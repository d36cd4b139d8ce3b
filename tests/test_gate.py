"""
Onelyid — Request Gate Tests
==============================

What:  Tests for OnelyidMiddleware.dispatch and its one-time runtime setup.
How:   Real bootstrap against a tmp_path SQLite file; the resolver and the
       OAuth client are mocked (see conftest.make_gate).

What we test:
    ✅ 503 while bootstrap is pending, for every path
    ✅ Recorded BootstrapError raised on every request once bootstrap failed
    ✅ Public URL: static, auto-detected, loopback fallback, invalid → 503
    ✅ Prefix derived from mount path and ASGI root_path
    ✅ Routes registered once; runtime config frozen afterwards
    ✅ OAuth client created once
    ✅ Fall-through to the host application with the context published
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import http_client
from onelyid.bootstrap import BootstrapState
from onelyid.database import migrate_to_latest
from onelyid.exceptions import BootstrapError, ConfigurationError, StorageError
from onelyid.middleware.gate import OnelyidMiddleware
from onelyid.urls import INVALID


class TestBootstrapGating:

    @pytest.mark.asyncio
    async def test_pending_bootstrap_returns_503(self, make_gate):
        release = asyncio.Event()

        async def slow_migrate(engine):
            await release.wait()
            await migrate_to_latest(engine)

        with patch("onelyid.bootstrap.migrate_to_latest", side_effect=slow_migrate):
            gate = await make_gate(wait=False)
            async with http_client(gate) as client:
                for path in ("/", "/oauth/login?handle=alice.example.com", "/missing"):
                    response = await client.get(path)
                    assert response.status_code == 503
                    assert response.text == "Service initializing"

                release.set()
                assert await gate.bootstrap.wait() is BootstrapState.READY

                response = await client.get("/")
                assert response.status_code == 200
                assert response.text == "host home"

    @pytest.mark.asyncio
    async def test_pending_does_not_register_routes(self, make_gate):
        release = asyncio.Event()

        async def slow_migrate(engine):
            await release.wait()
            await migrate_to_latest(engine)

        with patch("onelyid.bootstrap.migrate_to_latest", side_effect=slow_migrate):
            gate = await make_gate(wait=False)
            async with http_client(gate) as client:
                await client.get("/")
            assert gate.registrar.registered is False
            assert gate.runtime.public_url == ""
            release.set()
            await gate.bootstrap.wait()

    @pytest.mark.asyncio
    async def test_failed_bootstrap_raises_same_error_every_request(self, make_gate):
        cause = StorageError("Database migration failed")
        with patch("onelyid.bootstrap.migrate_to_latest", AsyncMock(side_effect=cause)):
            gate = await make_gate()

        assert gate.bootstrap.state is BootstrapState.FAILED
        recorded = gate.bootstrap.error

        async with http_client(gate) as client:
            with pytest.raises(BootstrapError) as first:
                await client.get("/")
            with pytest.raises(BootstrapError) as second:
                await client.get("/oauth/userinfo")

        assert first.value is recorded
        assert second.value is recorded
        assert recorded.step == "migrate"
        assert recorded.__cause__ is cause
        assert gate.registrar.registered is False

    @pytest.mark.asyncio
    async def test_failed_bootstrap_never_retries(self, make_gate):
        failing = AsyncMock(side_effect=StorageError("Database migration failed"))
        with patch("onelyid.bootstrap.migrate_to_latest", failing):
            gate = await make_gate()
            async with http_client(gate) as client:
                for _ in range(3):
                    with pytest.raises(BootstrapError):
                        await client.get("/")
        failing.assert_awaited_once()


class TestPublicUrl:

    @pytest.mark.asyncio
    async def test_static_public_url_is_used(self, make_gate):
        gate = await make_gate(public_url="https://auth.example.com/")
        assert gate.runtime.base_url == "https://auth.example.com"

        async with http_client(gate, base_url="http://internal:8000") as client:
            await client.get("/")

        assert gate.runtime.public_url == "https://auth.example.com"
        assert gate.runtime.base_path == "https://auth.example.com/oauth"

    @pytest.mark.asyncio
    async def test_public_url_detected_from_first_request(self, make_gate):
        gate = await make_gate()
        async with http_client(gate, base_url="https://api.example.com") as client:
            await client.get("/")

        assert gate.runtime.public_url == "https://api.example.com"
        assert gate.runtime.base_url == "https://api.example.com"
        assert gate.runtime.base_path == "https://api.example.com/oauth"

    @pytest.mark.asyncio
    async def test_detected_url_is_not_changed_by_later_requests(self, make_gate):
        gate = await make_gate()
        async with http_client(gate, base_url="https://api.example.com") as client:
            await client.get("/")
        async with http_client(gate, base_url="https://other.example.com") as client:
            response = await client.get("/")

        assert response.status_code == 200
        assert gate.runtime.public_url == "https://api.example.com"

    @pytest.mark.asyncio
    async def test_unusable_host_header_falls_back_to_loopback(self, make_gate):
        gate = await make_gate()
        async with http_client(gate) as client:
            response = await client.get("/", headers={"Host": "bad_host:4000"})

        assert response.status_code == 200
        assert gate.runtime.public_url == "http://127.0.0.1:4000"
        assert gate.runtime.base_url == "http://127.0.0.1:4000"

    @pytest.mark.asyncio
    async def test_host_header_with_path_falls_back_to_loopback(self, make_gate):
        gate = await make_gate()
        async with http_client(gate) as client:
            response = await client.get("/", headers={"Host": "api.example.com/evil"})

        assert response.status_code == 200
        assert gate.runtime.public_url == "http://127.0.0.1"
        assert gate.runtime.base_path == "http://127.0.0.1/oauth"

    @pytest.mark.asyncio
    async def test_invalid_static_public_url_returns_503(self, make_gate):
        gate = await make_gate(public_url="ftp://example.com")
        assert gate.runtime.public_url == INVALID

        async with http_client(gate) as client:
            for path in ("/", "/oauth/login?handle=alice.example.com"):
                response = await client.get(path)
                assert response.status_code == 503
                assert response.text == (
                    "Invalid publicUrl provided! Valid example: https://example.com"
                )

        assert gate.registrar.registered is False
        gate.create_client_mock.assert_not_awaited()


class TestPrefix:

    @pytest.mark.asyncio
    async def test_default_mount_path(self, client, gate):
        response = await client.get("/oauth/userinfo")
        assert response.status_code == 200
        assert gate.runtime.prefix_path == "/oauth"
        assert gate.runtime.prefix_route == "/oauth"

    @pytest.mark.asyncio
    async def test_custom_mount_path(self, make_gate):
        gate = await make_gate(mount_path="auth/")
        async with http_client(gate) as client:
            assert (await client.get("/auth/userinfo")).status_code == 200
            assert (await client.get("/oauth/userinfo")).status_code == 404
        assert gate.runtime.base_path == "http://test/auth"

    @pytest.mark.asyncio
    async def test_root_mount_path(self, make_gate):
        gate = await make_gate(mount_path="/")
        async with http_client(gate) as client:
            response = await client.get("/userinfo")
        assert response.json() == {"user": None, "info": "not logged-in"}
        assert gate.runtime.base_path == "http://test"

    @pytest.mark.asyncio
    async def test_root_path_prefixes_absolute_paths(self, make_gate):
        gate = await make_gate()
        async with http_client(gate, root_path="/app") as client:
            response = await client.get("/app/oauth/userinfo")

        assert response.status_code == 200
        assert gate.runtime.prefix_path == "/app/oauth"
        assert gate.runtime.prefix_route == "/oauth"
        assert gate.runtime.base_path == "http://test/app/oauth"

    def test_malformed_mount_path_fails_construction(self, config):
        with pytest.raises(ConfigurationError) as exc_info:
            OnelyidMiddleware(None, config=config.model_copy(update={"mount_path": "/a/../b"}))
        assert exc_info.value.field == "mount_path"

    def test_malformed_login_redirect_fails_construction(self, config):
        with pytest.raises(ConfigurationError) as exc_info:
            OnelyidMiddleware(None, config=config.model_copy(update={"login_redirect": "/a b"}))
        assert exc_info.value.field == "login_redirect"


class TestOneTimeSetup:

    @pytest.mark.asyncio
    async def test_routes_registered_once(self, client, gate):
        for _ in range(3):
            await client.get("/")
            await client.get("/oauth/userinfo")

        assert gate.registrar.registered is True
        assert len(gate.router.routes) == 4
        assert {route.name for route in gate.router.routes} == {
            "onelyid:client_metadata",
            "onelyid:callback",
            "onelyid:login",
            "onelyid:userinfo",
        }

    @pytest.mark.asyncio
    async def test_runtime_config_frozen_after_registration(self, client, gate):
        await client.get("/")
        assert gate.runtime.frozen is True
        with pytest.raises(AttributeError):
            gate.runtime.public_url = "https://elsewhere.example.com"

    @pytest.mark.asyncio
    async def test_oauth_client_created_once(self, client, gate, mock_oauth_client):
        await asyncio.gather(*(client.get("/") for _ in range(5)))
        await client.get("/oauth/userinfo")

        gate.create_client_mock.assert_awaited()
        assert gate.ctx.oauth_client is mock_oauth_client

    @pytest.mark.asyncio
    async def test_oauth_client_built_from_frozen_runtime(self, client, gate):
        await client.get("/")
        ctx, runtime = gate.create_client_mock.await_args.args
        assert ctx is gate.ctx
        assert runtime.frozen is True
        assert runtime.base_path == "http://test/oauth"


class TestDispatch:

    @pytest.mark.asyncio
    async def test_unmatched_request_reaches_host(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.text == "host home"

    @pytest.mark.asyncio
    async def test_context_published_to_host(self, client):
        response = await client.get("/state")
        assert response.text == "context"

    @pytest.mark.asyncio
    async def test_method_mismatch_falls_through(self, client, mock_oauth_client):
        response = await client.post("/oauth/login?handle=alice.example.com")
        # The host app owns the response; it has no such route.
        assert response.status_code == 404
        mock_oauth_client.authorize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aclose_releases_resources(self, gate, mock_resolver, mock_oauth_client):
        async with http_client(gate) as client:
            await client.get("/")
        await gate.aclose()
        mock_oauth_client.aclose.assert_awaited()
        mock_resolver.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_lifespan_shutdown_releases_resources(self, gate, mock_resolver):
        messages = [{"type": "lifespan.startup"}, {"type": "lifespan.shutdown"}]
        sent = []

        async def receive():
            return messages.pop(0)

        async def send(message):
            sent.append(message["type"])

        await gate({"type": "lifespan", "asgi": {"version": "3.0"}}, receive, send)

        assert sent == ["lifespan.startup.complete", "lifespan.shutdown.complete"]
        mock_resolver.aclose.assert_awaited()
