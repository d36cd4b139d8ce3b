"""
Onelyid — Config Resolver
===========================

What:  Pure functions that validate and normalize the mount path, the login
       redirect path and the public URL.
Who:   The middleware constructor (static config) and the request gate
       (first-request auto-detection).

Two failure styles, on purpose:
    - Paths are static, developer-supplied values: malformed input raises
      ``ConfigurationError`` and aborts middleware construction.
    - The public URL may come from late-bound configuration or a request's
      Host header: malformed input returns the ``INVALID`` sentinel so the
      gate can answer 503 instead of crashing the process.

Examples:
    normalize_mount_path(None)            -> "/oauth"
    normalize_mount_path("auth/")         -> "/auth"
    normalize_public_url(None)            -> ""
    normalize_public_url("not a url")     -> INVALID
    normalize_public_url("https://example.com") -> "https://example.com"
    loopback_url("localhost:4000")        -> "http://127.0.0.1:4000"
"""

import re
from typing import Optional
from urllib.parse import urlsplit

from onelyid.exceptions import ConfigurationError

DEFAULT_MOUNT_PATH = "/oauth"

# Sentinel stored in RuntimeConfig.public_url when static config is malformed.
INVALID = "<invalid>"

ALLOWED_SCHEMES = {"http", "https"}

LOOPBACK_HOST = "127.0.0.1"

# One or more "/segment" groups using RFC 3986 pchar characters.
_PATH_RE = re.compile(r"^(/[A-Za-z0-9._~!$&'()*+,;=:@%-]+)+$")

# urlsplit().hostname is lowercased and has IPv6 brackets stripped.
_HOSTNAME_RE = re.compile(r"^[a-z0-9.-]+$|^[0-9a-f:.]+$")


# ══════════════════════════════════════════════════════════════════════════
# Paths (fatal on bad input)
# ══════════════════════════════════════════════════════════════════════════

def normalize_path(value: Optional[str], field: str = "path") -> str:
    """
    Canonicalize a URL path: leading slash, no trailing slash.

    Returns "" for absent input and for "/" (the application root).

    Raises:
        ConfigurationError: whitespace, query/fragment characters, empty or
            dot segments, or characters outside the RFC 3986 path alphabet.
    """
    if value is None or value == "":
        return ""
    if not isinstance(value, str):
        raise ConfigurationError(f"{field} must be a string", field=field)

    path = value if value.startswith("/") else f"/{value}"
    path = path.rstrip("/")
    if not path:
        return ""

    if not _PATH_RE.match(path):
        raise ConfigurationError(
            f"Invalid {field} {value!r}. Valid example: /auth",
            field=field,
            context={"value": value},
        )
    segments = path.split("/")[1:]
    if any(segment in (".", "..") for segment in segments):
        raise ConfigurationError(
            f"Invalid {field} {value!r}: dot segments are not allowed",
            field=field,
            context={"value": value},
        )
    return path


def normalize_mount_path(value: Optional[str] = None) -> str:
    """Mount path for the middleware routes; ``DEFAULT_MOUNT_PATH`` when absent."""
    if value is None or value == "":
        return DEFAULT_MOUNT_PATH
    return normalize_path(value, field="mount_path")


# ══════════════════════════════════════════════════════════════════════════
# Public URL (never raises)
# ══════════════════════════════════════════════════════════════════════════

def normalize_public_url(value: Optional[str] = None) -> str:
    """
    Validate an absolute http(s) URL.

    Returns:
        "" when absent (defer to auto-detection on the first request),
        the URL without a trailing slash when valid,
        ``INVALID`` otherwise.
    """
    if value is None or value == "":
        return ""
    if not isinstance(value, str) or any(ch.isspace() for ch in value):
        return INVALID

    try:
        parts = urlsplit(value)
        # .port raises ValueError for non-numeric or out of range ports
        parts.port
    except ValueError:
        return INVALID

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return INVALID
    if not parts.hostname or not _HOSTNAME_RE.match(parts.hostname):
        return INVALID
    if parts.username or parts.password or parts.query or parts.fragment:
        return INVALID

    return f"{scheme}://{parts.netloc}{parts.path.rstrip('/')}"


def loopback_url(host: Optional[str]) -> str:
    """
    Loopback fallback built from the port portion of a Host header.

    Port 80 and a missing or non-numeric port produce a URL without a port.
    """
    port = ""
    if host:
        # Ignore colons inside a bracketed IPv6 literal.
        tail = host.rsplit("]", 1)[-1]
        if ":" in tail:
            port = tail.rsplit(":", 1)[1]
    if not port.isdigit() or port == "80":
        return f"http://{LOOPBACK_HOST}"
    return f"http://{LOOPBACK_HOST}:{port}"


def detect_public_url(host: Optional[str], scheme: str) -> str:
    """
    Candidate public URL for a request, or "" when the Host header does not
    produce a valid one. The gate falls back to ``loopback_url`` on "".
    """
    if not host:
        return ""
    candidate = f"{scheme}://{host}"
    # A Host header names an origin only.
    parts = urlsplit(candidate)
    if parts.path or parts.query or parts.fragment:
        return ""
    detected = normalize_public_url(candidate)
    if detected == INVALID:
        return ""
    return detected
