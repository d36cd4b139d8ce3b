"""
Onelyid — Abstract OAuth Client Interface
===========================================

What:  The contract the route handlers rely on.
How:   ``ATProtoOAuthClient`` implements it; tests substitute mocks.

Contract:
    - ``client_metadata`` is a JSON-serializable dict, fixed for the client's
      lifetime (it embeds the redirect URI, so it is built after the public
      URL and mount prefix are frozen).
    - ``authorize`` raises ``OAuthResolverError`` when the account or its
      authorization server cannot be resolved; the message is user-facing.
      Anything else it raises is treated as an internal failure.
    - ``callback`` raises on any malformed or rejected response.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from onelyid.schemas.auth import CallbackResult


class OAuthClient(ABC):

    @property
    @abstractmethod
    def client_metadata(self) -> Dict[str, Any]:
        """Client descriptor served verbatim at <prefix>/client-metadata.json."""
        ...

    @abstractmethod
    async def authorize(self, handle: str, scope: str) -> str:
        """
        Start an authorization flow for ``handle``.

        Returns:
            The authorization server URL to redirect the browser to.

        Raises:
            OAuthResolverError: identity or server metadata resolution failed.
        """
        ...

    @abstractmethod
    async def callback(self, params: Mapping[str, str]) -> CallbackResult:
        """
        Complete the flow from the callback query parameters.

        Raises:
            OAuthCallbackError: error response, unknown state, issuer
                mismatch, or failed code exchange.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
