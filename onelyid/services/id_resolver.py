"""
Onelyid — Identity Resolver
=============================

What:  Handle → DID and DID → handle resolution for AT Protocol identities,
       with an in-memory TTL cache.
How:   httpx against public infrastructure:
         handle → DID:  https://<handle>/.well-known/atproto-did, then the
                        AppView's com.atproto.identity.resolveHandle XRPC
         DID → doc:     did:plc via the PLC directory,
                        did:web via https://<host>/.well-known/did.json
Who:   Built once by bootstrap; used by the OAuth client (authorize) and
       the session layer (userinfo).

Bidirectional verification:
    A DID document *claims* a handle in ``alsoKnownAs``; the claim only counts
    when that handle resolves back to the same DID. Otherwise the DID itself
    stands in for the handle.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote

import httpx

from onelyid.config import OnelyidConfig
from onelyid.exceptions import IdentityResolutionError
from onelyid.services.http import create_http_client, http_retry
from onelyid.syntax import is_valid_did, is_valid_handle, normalize_handle

logger = logging.getLogger(__name__)

PDS_SERVICE_ID = "#atproto_pds"


class TTLCache:
    """
    Minimal expiring dict, bounded to ``maxsize`` entries.

    Expired entries are dropped on every ``set``; past ``maxsize`` the oldest
    insertion is evicted. Single-process only: entries live in this instance
    and are never shared across workers.
    """

    def __init__(self, ttl: float, maxsize: int = 1024):
        self.ttl = ttl
        self.maxsize = maxsize
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if self.ttl <= 0 or self.maxsize <= 0:
            return
        now = time.monotonic()
        self._evict_expired(now)
        # Re-inserting moves the key to the newest position.
        self._entries.pop(key, None)
        while len(self._entries) >= self.maxsize:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (now + self.ttl, value)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]


# ══════════════════════════════════════════════════════════════════════════
# Base Resolver
# ══════════════════════════════════════════════════════════════════════════

class IdResolver:
    """
    One-directional lookups: handle → DID and DID → DID document.

    ``resolve_handle`` returns None for handles that do not resolve;
    ``resolve_did`` raises ``IdentityResolutionError`` because every caller
    needs the document to continue.
    """

    def __init__(
        self,
        config: OnelyidConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.plc_directory_url = config.plc_directory_url.rstrip("/")
        self.appview_url = config.appview_url.rstrip("/")
        self.http = http_client or create_http_client(config)
        self._owns_http = http_client is None
        self.handle_cache = TTLCache(config.resolver_cache_ttl, config.resolver_cache_maxsize)
        self.did_cache = TTLCache(config.resolver_cache_ttl, config.resolver_cache_maxsize)
        self._get = http_retry(config)(self._get_once)

    async def _get_once(self, url: str, **kwargs) -> httpx.Response:
        return await self.http.get(url, **kwargs)

    # ── Handle → DID ──────────────────────────────────────────────────────
    async def resolve_handle(self, handle: str) -> Optional[str]:
        if not is_valid_handle(handle):
            return None
        handle = normalize_handle(handle)

        cached = self.handle_cache.get(handle)
        if cached is not None:
            return cached

        did = await self._resolve_handle_well_known(handle)
        if did is None:
            did = await self._resolve_handle_xrpc(handle)

        if did is not None:
            self.handle_cache.set(handle, did)
        return did

    async def _resolve_handle_well_known(self, handle: str) -> Optional[str]:
        try:
            response = await self._get(f"https://{handle}/.well-known/atproto-did")
        except httpx.HTTPError as e:
            logger.debug("well-known lookup failed for %s: %s", handle, e)
            return None
        if response.status_code != 200:
            return None
        lines = response.text.strip().splitlines()
        candidate = lines[0].strip() if lines else ""
        return candidate if is_valid_did(candidate) else None

    async def _resolve_handle_xrpc(self, handle: str) -> Optional[str]:
        try:
            response = await self._get(
                f"{self.appview_url}/xrpc/com.atproto.identity.resolveHandle",
                params={"handle": handle},
            )
        except httpx.HTTPError as e:
            logger.warning("resolveHandle failed for %s: %s", handle, e)
            return None
        if response.status_code != 200:
            return None
        try:
            candidate = response.json().get("did")
        except ValueError:
            return None
        return candidate if is_valid_did(candidate) else None

    # ── DID → Document ────────────────────────────────────────────────────
    async def resolve_did(self, did: str) -> Dict[str, Any]:
        """
        Fetch the DID document.

        Raises:
            IdentityResolutionError: unsupported method, network failure,
                non-200 answer, or a document for a different DID.
        """
        if not is_valid_did(did):
            raise IdentityResolutionError(did, f"Invalid DID: {did}")

        cached = self.did_cache.get(did)
        if cached is not None:
            return cached

        url = self._did_document_url(did)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise IdentityResolutionError(
                did, context={"url": url, "error": str(e)}
            ) from e
        if response.status_code != 200:
            raise IdentityResolutionError(
                did,
                f"DID document not found: {did}",
                context={"url": url, "status": response.status_code},
            )
        try:
            doc = response.json()
        except ValueError as e:
            raise IdentityResolutionError(
                did, f"Malformed DID document: {did}", context={"url": url}
            ) from e
        if not isinstance(doc, dict) or doc.get("id") != did:
            raise IdentityResolutionError(
                did, f"DID document does not match: {did}", context={"url": url}
            )

        self.did_cache.set(did, doc)
        return doc

    # ── Profile ───────────────────────────────────────────────────────────
    async def fetch_profile(self, did: str) -> Optional[Dict[str, Any]]:
        """Public profile record from the AppView, or None when unavailable."""
        try:
            response = await self._get(
                f"{self.appview_url}/xrpc/app.bsky.actor.getProfile",
                params={"actor": did},
            )
        except httpx.HTTPError as e:
            logger.warning("getProfile failed for %s: %s", did, e)
            return None
        if response.status_code != 200:
            return None
        try:
            profile = response.json()
        except ValueError:
            return None
        return profile if isinstance(profile, dict) else None

    def _did_document_url(self, did: str) -> str:
        if did.startswith("did:plc:"):
            return f"{self.plc_directory_url}/{did}"
        if did.startswith("did:web:"):
            encoded_host = did[len("did:web:"):]
            if ":" in encoded_host:
                # did:web with a path component is not used for accounts
                raise IdentityResolutionError(did, f"Unsupported did:web form: {did}")
            return f"https://{unquote(encoded_host)}/.well-known/did.json"
        raise IdentityResolutionError(did, f"Unsupported DID method: {did}")

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


# ══════════════════════════════════════════════════════════════════════════
# Document Helpers
# ══════════════════════════════════════════════════════════════════════════

def get_handle(doc: Dict[str, Any]) -> Optional[str]:
    """Handle claimed by a DID document, unverified."""
    for aka in doc.get("alsoKnownAs") or []:
        if isinstance(aka, str) and aka.startswith("at://"):
            handle = aka[len("at://"):]
            if is_valid_handle(handle):
                return normalize_handle(handle)
    return None


def get_pds_endpoint(doc: Dict[str, Any]) -> Optional[str]:
    did = doc.get("id", "")
    for service in doc.get("service") or []:
        if not isinstance(service, dict):
            continue
        service_id = service.get("id", "")
        if service_id in (PDS_SERVICE_ID, f"{did}{PDS_SERVICE_ID}"):
            endpoint = service.get("serviceEndpoint")
            if isinstance(endpoint, str) and endpoint.startswith(("https://", "http://")):
                return endpoint.rstrip("/")
    return None


# ══════════════════════════════════════════════════════════════════════════
# Bidirectional Resolver
# ══════════════════════════════════════════════════════════════════════════

class BidirectionalResolver:
    """Verified handle ↔ DID mapping on top of an ``IdResolver``."""

    def __init__(self, base: IdResolver):
        self.base = base

    async def resolve_handle(self, handle: str) -> Optional[str]:
        return await self.base.resolve_handle(handle)

    async def resolve_did(self, did: str) -> Dict[str, Any]:
        return await self.base.resolve_did(did)

    async def resolve_pds(self, did: str) -> str:
        doc = await self.base.resolve_did(did)
        endpoint = get_pds_endpoint(doc)
        if endpoint is None:
            raise IdentityResolutionError(did, f"No PDS endpoint for {did}")
        return endpoint

    async def resolve_did_to_handle(self, did: str) -> str:
        """
        Verified handle for ``did``, or ``did`` itself when the claimed handle
        is missing or does not point back.

        Raises:
            IdentityResolutionError: the DID document cannot be fetched.
        """
        doc = await self.base.resolve_did(did)
        handle = get_handle(doc)
        if handle is None:
            return did
        resolved = await self.base.resolve_handle(handle)
        return handle if resolved == did else did

    async def resolve_dids_to_handles(self, dids: Iterable[str]) -> Dict[str, str]:
        """Batch form of ``resolve_did_to_handle``; failures map a DID to itself."""
        unique = list(dict.fromkeys(dids))
        results = await asyncio.gather(
            *(self.resolve_did_to_handle(did) for did in unique),
            return_exceptions=True,
        )
        handles: Dict[str, str] = {}
        for did, result in zip(unique, results):
            if isinstance(result, IdentityResolutionError):
                handles[did] = did
            elif isinstance(result, BaseException):
                raise result
            else:
                handles[did] = result
        return handles

    async def fetch_profile(self, did: str) -> Optional[Dict[str, Any]]:
        return await self.base.fetch_profile(did)

    async def aclose(self) -> None:
        await self.base.aclose()


def create_id_resolver(config: OnelyidConfig) -> IdResolver:
    return IdResolver(config)


def create_bidirectional_resolver(base: IdResolver) -> BidirectionalResolver:
    return BidirectionalResolver(base)
