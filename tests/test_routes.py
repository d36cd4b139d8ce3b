"""
Onelyid — Route Handler Tests
===============================

What:  Tests for the four endpoints served under the mount prefix.
How:   Requests go through the real gate; the OAuth client and resolver are
       mocks, sessions are real signed cookies.

What we test:
    ✅ client-metadata.json serves the client's metadata as indented JSON
    ✅ login rejects invalid handles without touching the OAuth client
    ✅ login redirects on success; resolver errors are shown, others hidden
    ✅ callback sets the session cookie and redirects; failures → /?error
    ✅ userinfo: not logged-in / error / user payloads
"""

from unittest.mock import AsyncMock

import pytest
from itsdangerous import URLSafeTimedSerializer

from conftest import CLIENT_METADATA, http_client
from onelyid.exceptions import IdentityResolutionError, OAuthCallbackError, OAuthResolverError
from onelyid.schemas.auth import CallbackResult, OAuthSession
from onelyid.services.session import SESSION_SALT


def session_cookie(gate, did: str) -> str:
    """A valid ``sid`` cookie header value for ``did``."""
    serializer = URLSafeTimedSerializer(gate.runtime.cookie_secret, salt=SESSION_SALT)
    return f"sid={serializer.dumps({'did': did})}"


class TestClientMetadata:

    @pytest.mark.asyncio
    async def test_serves_client_metadata(self, client):
        response = await client.get("/oauth/client-metadata.json")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        assert response.json() == CLIENT_METADATA
        # two-space indented
        assert '\n  "client_id"' in response.text


class TestLogin:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query, echoed", [
        ("", ""),
        ("?handle=", ""),
        ("?handle=not_a_handle", "not_a_handle"),
        ("?handle=alice", "alice"),
    ])
    async def test_invalid_handle_rejected(self, client, mock_oauth_client, query, echoed):
        response = await client.get(f"/oauth/login{query}")
        assert response.status_code == 200
        assert response.json() == {"handle": echoed, "error": "invalid handle"}
        mock_oauth_client.authorize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redirects_to_authorization_url(self, client, mock_oauth_client):
        response = await client.get("/oauth/login?handle=alice.example.com")
        assert response.status_code == 302
        assert response.headers["location"] == "https://auth.example.com/authorize?request_uri=x"
        mock_oauth_client.authorize.assert_awaited_once_with(
            "alice.example.com", scope="atproto transition:generic"
        )

    @pytest.mark.asyncio
    async def test_resolver_error_message_is_shown(self, client, mock_oauth_client):
        mock_oauth_client.authorize = AsyncMock(
            side_effect=OAuthResolverError("Failed to resolve identity: alice.example.com")
        )
        response = await client.get("/oauth/login?handle=alice.example.com")
        assert response.status_code == 200
        assert response.json() == {"error": "Failed to resolve identity: alice.example.com"}

    @pytest.mark.asyncio
    async def test_other_errors_are_generic(self, client, mock_oauth_client):
        mock_oauth_client.authorize = AsyncMock(side_effect=RuntimeError("socket closed"))
        response = await client.get("/oauth/login?handle=alice.example.com")
        assert response.json() == {"error": "couldn't initiate login"}
        assert "socket" not in response.text


class TestCallback:

    @pytest.mark.asyncio
    async def test_success_sets_cookie_and_redirects(self, client, gate, mock_oauth_client):
        mock_oauth_client.callback = AsyncMock(
            return_value=CallbackResult(session=OAuthSession(did="did:plc:alice"), state="s1")
        )
        response = await client.get("/oauth/callback?code=abc&state=s1&iss=https://pds.example.com")

        assert response.status_code == 302
        assert response.headers["location"] == "/oauth/userinfo"
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith("sid=")
        assert "httponly" in set_cookie.lower()
        assert "samesite=lax" in set_cookie.lower()
        mock_oauth_client.callback.assert_awaited_once_with(
            {"code": "abc", "state": "s1", "iss": "https://pds.example.com"}
        )

        cookie = set_cookie.split(";", 1)[0]
        userinfo = await client.get("/oauth/userinfo", headers={"Cookie": cookie})
        assert userinfo.json()["user"]["did"] == "did:plc:alice"

    @pytest.mark.asyncio
    async def test_login_redirect_overrides_target(self, make_gate, mock_oauth_client):
        mock_oauth_client.callback = AsyncMock(
            return_value=CallbackResult(session=OAuthSession(did="did:plc:alice"))
        )
        gate = await make_gate(login_redirect="dashboard/")
        async with http_client(gate) as client:
            response = await client.get("/oauth/callback?code=abc&state=s1")
        assert response.status_code == 302
        assert response.headers["location"] == "/dashboard"

    @pytest.mark.asyncio
    async def test_redirect_includes_root_path(self, make_gate, mock_oauth_client):
        mock_oauth_client.callback = AsyncMock(
            return_value=CallbackResult(session=OAuthSession(did="did:plc:alice"))
        )
        gate = await make_gate()
        async with http_client(gate, root_path="/app") as client:
            response = await client.get("/app/oauth/callback?code=abc&state=s1")
        assert response.headers["location"] == "/app/oauth/userinfo"

    @pytest.mark.asyncio
    async def test_cookie_secure_behind_tls_proxy(self, make_gate, mock_oauth_client):
        mock_oauth_client.callback = AsyncMock(
            return_value=CallbackResult(session=OAuthSession(did="did:plc:alice"))
        )
        gate = await make_gate(public_url="https://auth.example.com")
        # TLS ends at the proxy; the app itself sees plain http.
        async with http_client(gate, base_url="http://internal:8000") as client:
            response = await client.get("/oauth/callback?code=abc&state=s1")
        assert response.status_code == 302
        assert "secure" in response.headers["set-cookie"].lower()

    @pytest.mark.asyncio
    async def test_failure_redirects_to_error(self, client, mock_oauth_client):
        mock_oauth_client.callback = AsyncMock(
            side_effect=OAuthCallbackError("Unknown authorization state")
        )
        response = await client.get("/oauth/callback?code=abc&state=bogus")
        assert response.status_code == 302
        assert response.headers["location"] == "/?error"
        assert "set-cookie" not in response.headers


class TestUserinfo:

    @pytest.mark.asyncio
    async def test_not_logged_in(self, client):
        response = await client.get("/oauth/userinfo")
        assert response.json() == {"user": None, "info": "not logged-in"}

    @pytest.mark.asyncio
    async def test_tampered_cookie_is_not_a_session(self, client, gate):
        cookie = session_cookie(gate, "did:plc:alice") + "x"
        response = await client.get("/oauth/userinfo", headers={"Cookie": cookie})
        assert response.json() == {"user": None, "info": "not logged-in"}

    @pytest.mark.asyncio
    async def test_logged_in_user(self, client, gate, mock_resolver):
        mock_resolver.fetch_profile = AsyncMock(return_value={
            "displayName": "Alice",
            "avatar": "https://cdn.example.com/alice.jpg",
        })
        response = await client.get(
            "/oauth/userinfo", headers={"Cookie": session_cookie(gate, "did:plc:alice")}
        )
        assert response.json() == {
            "user": {
                "did": "did:plc:alice",
                "handle": "alice.example.com",
                "displayName": "Alice",
                "avatar": "https://cdn.example.com/alice.jpg",
            }
        }
        mock_resolver.resolve_did_to_handle.assert_awaited_once_with("did:plc:alice")

    @pytest.mark.asyncio
    async def test_resolution_error(self, client, gate, mock_resolver):
        mock_resolver.resolve_did_to_handle = AsyncMock(
            side_effect=IdentityResolutionError("did:plc:alice")
        )
        response = await client.get(
            "/oauth/userinfo", headers={"Cookie": session_cookie(gate, "did:plc:alice")}
        )
        assert response.json() == {
            "user": None,
            "error": "Failed to resolve identity: did:plc:alice",
        }
