"""
Onelyid — AT Protocol OAuth Client
====================================

What:  Authorization-code + PKCE client for AT Protocol accounts.
Who:   Built once by the request gate (after the public URL and the mount
       prefix are frozen); called by the login and callback routes.

Authorize flow:
    handle ──resolve──▶ DID ──resolve──▶ DID document ──▶ PDS endpoint
    PDS /.well-known/oauth-protected-resource      ──▶ authorization server
    server /.well-known/oauth-authorization-server ──▶ endpoints
    PKCE verifier + random state stored in auth_state
    pushed authorization request (when advertised) ──▶ redirect URL

Callback flow:
    error? ──▶ OAuthCallbackError
    state  ──▶ consume auth_state row (single use)
    iss    ──▶ must match the server the flow started with
    code   ──▶ token endpoint exchange; ``sub`` must be the expected DID
    tokens ──▶ auth_session row keyed by DID

Client identity:
    Public deployments use <basePath>/client-metadata.json as ``client_id``.
    Loopback deployments (127.0.0.1 / localhost) use the development form
    ``http://localhost?redirect_uri=...&scope=...`` which needs no metadata
    fetch by the authorization server.
"""

import base64
import hashlib
import logging
import secrets
import time
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode, urlsplit

import httpx

from onelyid.config import OnelyidConfig
from onelyid.context import AppContext, RuntimeConfig
from onelyid.exceptions import (
    IdentityResolutionError,
    OAuthCallbackError,
    OAuthError,
    OAuthResolverError,
)
from onelyid.schemas.auth import CallbackResult, OAuthSession
from onelyid.services.http import create_http_client, http_retry
from onelyid.services.id_resolver import BidirectionalResolver
from onelyid.services.oauth_base import OAuthClient
from onelyid.services.store import SessionStore, StateStore

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}

# Authorization requests not completed within this window are swept.
STATE_MAX_AGE = timedelta(hours=1)


def is_loopback(url: str) -> bool:
    return urlsplit(url).hostname in LOOPBACK_HOSTS


def build_client_metadata(runtime: RuntimeConfig, config: OnelyidConfig) -> Dict[str, Any]:
    """
    Client descriptor for the frozen runtime config.

    ``dpop_bound_access_tokens`` is advertised because AT Protocol
    authorization servers reject clients without it, but no request made by
    this package carries a DPoP proof yet.
    """
    redirect_uri = f"{runtime.base_path}/callback"
    if is_loopback(runtime.base_url):
        client_id = "http://localhost?" + urlencode(
            {"redirect_uri": redirect_uri, "scope": config.oauth_scope}
        )
    else:
        client_id = f"{runtime.base_path}/client-metadata.json"

    return {
        "client_id": client_id,
        "client_name": config.client_name,
        "client_uri": runtime.base_url,
        "redirect_uris": [redirect_uri],
        "scope": config.oauth_scope,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "application_type": "web",
        "token_endpoint_auth_method": "none",
        "dpop_bound_access_tokens": True,
    }


def pkce_pair() -> tuple:
    """(verifier, S256 challenge)"""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class ATProtoOAuthClient(OAuthClient):

    def __init__(
        self,
        *,
        runtime: RuntimeConfig,
        config: OnelyidConfig,
        resolver: BidirectionalResolver,
        state_store: StateStore,
        session_store: SessionStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._metadata = build_client_metadata(runtime, config)
        self.client_id: str = self._metadata["client_id"]
        self.redirect_uri: str = self._metadata["redirect_uris"][0]
        self.resolver = resolver
        self.state_store = state_store
        self.session_store = session_store
        self.http = http_client or create_http_client(config)
        self._owns_http = http_client is None
        self._get = http_retry(config)(self._get_once)
        self._post_par = http_retry(config)(self._post_once)

    @property
    def client_metadata(self) -> Dict[str, Any]:
        return self._metadata

    async def _get_once(self, url: str) -> httpx.Response:
        return await self.http.get(url, headers={"Accept": "application/json"})

    async def _post_once(self, url: str, data: Dict[str, str]) -> httpx.Response:
        return await self.http.post(url, data=data, headers={"Accept": "application/json"})

    # ══════════════════════════════════════════════════════════════════════
    # Authorize
    # ══════════════════════════════════════════════════════════════════════

    async def authorize(self, handle: str, scope: str) -> str:
        did = await self.resolver.resolve_handle(handle)
        if did is None:
            raise OAuthResolverError(
                f"Failed to resolve handle: {handle}",
                context={"handle": handle},
            )
        try:
            pds = await self.resolver.resolve_pds(did)
        except IdentityResolutionError as e:
            raise OAuthResolverError(e.message, context=e.context) from e

        issuer = await self._resolve_issuer(pds)
        server = await self._fetch_server_metadata(issuer)

        await self.state_store.delete_expired(STATE_MAX_AGE)

        state = secrets.token_urlsafe(32)
        verifier, challenge = pkce_pair()
        await self.state_store.set(
            state,
            {
                "iss": issuer,
                "did": did,
                "verifier": verifier,
                "token_endpoint": server["token_endpoint"],
            },
        )

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "login_hint": handle,
        }

        par_endpoint = server.get("pushed_authorization_request_endpoint")
        if par_endpoint:
            query = {"client_id": self.client_id, "request_uri": await self._push(par_endpoint, params)}
        else:
            query = params

        logger.info("Authorization started for %s via %s", did, issuer)
        return f"{server['authorization_endpoint']}?{urlencode(query)}"

    async def _resolve_issuer(self, pds: str) -> str:
        url = f"{pds}/.well-known/oauth-protected-resource"
        document = await self._fetch_json(url)
        servers = document.get("authorization_servers")
        if not isinstance(servers, list) or not servers or not isinstance(servers[0], str):
            raise OAuthResolverError(
                f"No authorization server advertised by {pds}",
                context={"url": url},
            )
        return servers[0].rstrip("/")

    async def _fetch_server_metadata(self, issuer: str) -> Dict[str, Any]:
        url = f"{issuer}/.well-known/oauth-authorization-server"
        metadata = await self._fetch_json(url)
        if str(metadata.get("issuer") or "").rstrip("/") != issuer:
            raise OAuthResolverError(
                f"Authorization server metadata mismatch for {issuer}",
                context={"url": url, "issuer": metadata.get("issuer")},
            )
        for key in ("authorization_endpoint", "token_endpoint"):
            if not isinstance(metadata.get(key), str):
                raise OAuthResolverError(
                    f"Authorization server {issuer} is missing {key}",
                    context={"url": url},
                )
        return metadata

    async def _fetch_json(self, url: str) -> Dict[str, Any]:
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise OAuthResolverError(
                f"Failed to fetch {url}",
                context={"error": str(e)},
            ) from e
        if response.status_code != 200:
            raise OAuthResolverError(
                f"Failed to fetch {url}",
                context={"status": response.status_code},
            )
        try:
            document = response.json()
        except ValueError as e:
            raise OAuthResolverError(f"Malformed metadata at {url}") from e
        if not isinstance(document, dict):
            raise OAuthResolverError(f"Malformed metadata at {url}")
        return document

    async def _push(self, endpoint: str, params: Dict[str, str]) -> str:
        """Pushed authorization request; returns the ``request_uri``."""
        try:
            response = await self._post_par(endpoint, params)
        except httpx.HTTPError as e:
            raise OAuthError(
                "Pushed authorization request failed",
                context={"endpoint": endpoint, "error": str(e)},
            ) from e
        if response.status_code not in (200, 201):
            raise OAuthError(
                "Pushed authorization request rejected",
                context={"endpoint": endpoint, "status": response.status_code},
            )
        try:
            request_uri = response.json()["request_uri"]
        except (ValueError, KeyError, TypeError) as e:
            raise OAuthError(
                "Malformed pushed authorization response",
                context={"endpoint": endpoint},
            ) from e
        return request_uri

    # ══════════════════════════════════════════════════════════════════════
    # Callback
    # ══════════════════════════════════════════════════════════════════════

    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        state_key = params.get("state")
        stored = await self.state_store.pop(state_key) if state_key else None

        if params.get("error"):
            raise OAuthCallbackError(
                params.get("error_description") or params["error"],
                context={"error": params["error"]},
            )
        if not state_key:
            raise OAuthCallbackError("Missing state parameter")
        if stored is None:
            raise OAuthCallbackError("Unknown authorization state")

        code = params.get("code")
        if not code:
            raise OAuthCallbackError("Missing code parameter")

        issuer = params.get("iss")
        if issuer and issuer.rstrip("/") != stored["iss"]:
            raise OAuthCallbackError(
                "Issuer mismatch",
                context={"expected": stored["iss"], "received": issuer},
            )

        token = await self._exchange_code(stored, code)

        did = token.get("sub")
        if did != stored["did"]:
            raise OAuthCallbackError(
                "Token subject does not match the authorizing account",
                context={"expected": stored["did"], "received": did},
            )

        expires_in = token.get("expires_in")
        await self.session_store.set(
            did,
            {
                "iss": stored["iss"],
                "token_type": token.get("token_type"),
                "access_token": token.get("access_token"),
                "refresh_token": token.get("refresh_token"),
                "scope": token.get("scope"),
                "expires_at": (
                    int(time.time()) + int(expires_in)
                    if isinstance(expires_in, (int, float))
                    else None
                ),
            },
        )

        logger.info("Authorization completed for %s", did)
        return CallbackResult(
            session=OAuthSession(did=did, scope=token.get("scope")),
            state=state_key,
        )

    async def _exchange_code(self, stored: Dict[str, Any], code: str) -> Dict[str, Any]:
        # Not retried: authorization codes are single use.
        try:
            response = await self.http.post(
                stored["token_endpoint"],
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                    "client_id": self.client_id,
                    "code_verifier": stored["verifier"],
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OAuthCallbackError(
                "Token exchange failed",
                context={"error": str(e)},
            ) from e
        if response.status_code != 200:
            raise OAuthCallbackError(
                "Token exchange rejected",
                context={"status": response.status_code},
            )
        try:
            token = response.json()
        except ValueError as e:
            raise OAuthCallbackError("Malformed token response") from e
        if not isinstance(token, dict):
            raise OAuthCallbackError("Malformed token response")
        return token

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


async def create_client(ctx: AppContext, runtime: RuntimeConfig) -> OAuthClient:
    """
    Build the protocol client from the frozen runtime config.

    Sweeps authorization requests left over from previous runs first.
    """
    state_store = StateStore(ctx.db)
    await state_store.delete_expired(STATE_MAX_AGE)
    client = ATProtoOAuthClient(
        runtime=runtime,
        config=ctx.config,
        resolver=ctx.resolver,
        state_store=state_store,
        session_store=SessionStore(ctx.db),
    )
    ctx.logger.info("OAuth client ready (client_id=%s)", client.client_id)
    return client
