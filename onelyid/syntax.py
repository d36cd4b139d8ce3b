"""
Onelyid — Identifier Syntax
=============================

Syntax checks for AT Protocol handles and DIDs. Purely lexical: a valid
handle may still fail to resolve.
"""

import re

# Domain-name shaped, at least two labels, TLD must not start with a digit.
_HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

_DID_RE = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")

MAX_HANDLE_LENGTH = 253
MAX_DID_LENGTH = 2048


def is_valid_handle(handle: object) -> bool:
    if not isinstance(handle, str) or len(handle) > MAX_HANDLE_LENGTH:
        return False
    return bool(_HANDLE_RE.match(handle))


def is_valid_did(did: object) -> bool:
    if not isinstance(did, str) or len(did) > MAX_DID_LENGTH:
        return False
    return bool(_DID_RE.match(did))


def normalize_handle(handle: str) -> str:
    """Handles compare case-insensitively; store them lowercased."""
    return handle.strip().lower()
