"""
Onelyid — Custom Exception Hierarchy
======================================

What:  Application-specific exceptions for the middleware and its collaborators.
How:   Each exception carries a user-safe message and an optional context dict.
       The context is for logs only and is never rendered into a response.
Who:   Raised by the config resolver, bootstrap, storage and OAuth services;
       caught by the request gate, the route handlers, or the host's handlers.

Exception Hierarchy:
    OnelyidError (base)
    ├── ConfigurationError       → raised from the middleware constructor
    ├── BootstrapError           → raised on every request once bootstrap failed
    ├── StorageError             → database open / migration / secret failures
    ├── IdentityResolutionError  → handle or DID could not be resolved
    └── OAuthError
        ├── OAuthResolverError   → login: message is shown to the user
        └── OAuthCallbackError   → callback: swallowed into a generic redirect
"""

from typing import Any, Dict, Optional


class OnelyidError(Exception):
    """
    Base exception for all onelyid errors.

    Attributes:
        message:  Human-readable description (safe to return in an API response)
        context:  Additional debug info (logged but NOT returned to the client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(OnelyidError):
    """
    Raised when static middleware configuration is malformed.

    When:    Middleware construction (mount path, login redirect path).
    Effect:  Aborts creation of the middleware instance. Never raised per request.
    """

    def __init__(
        self,
        message: str = "Invalid configuration",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class BootstrapError(OnelyidError):
    """
    Terminal failure of the one-time bootstrap sequence.

    The original exception is chained as ``__cause__``. The same instance is
    re-raised for every subsequent request so the host's error channel sees
    an identical error each time.
    """

    def __init__(
        self,
        message: str = "onelyid failed to initialize",
        step: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if step:
            ctx["step"] = step
        super().__init__(message=message, context=ctx)
        self.step = step


class StorageError(OnelyidError):
    """Raised when the embedded database cannot be opened, migrated or queried."""

    def __init__(
        self,
        message: str = "A storage error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class IdentityResolutionError(OnelyidError):
    """
    Raised when a handle or DID cannot be resolved.

    What:  The handle has no DID, the DID document is missing, or the
           document does not name a PDS endpoint.
    """

    def __init__(
        self,
        identifier: str,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["identifier"] = identifier
        super().__init__(
            message=message or f"Failed to resolve identity: {identifier}",
            context=ctx,
        )
        self.identifier = identifier


class OAuthError(OnelyidError):
    """Base class for protocol client failures."""


class OAuthResolverError(OAuthError):
    """
    Raised by ``authorize`` when the user's identity or authorization server
    cannot be resolved. Its message is meant for the end user
    (e.g. "Failed to resolve identity: alice.example.com").
    """


class OAuthCallbackError(OAuthError):
    """
    Raised by ``callback`` for malformed or rejected authorization responses.

    Security Note:
        The callback route never shows this message to the browser; it logs the
        error and redirects to a generic error indicator.
    """
