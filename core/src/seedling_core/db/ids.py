from __future__ import annotations

import hashlib
import secrets


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def new_session_token() -> str:
    """Generate an opaque bearer token handed to the client once, at login."""

    return secrets.token_urlsafe(32)


def session_token_hash(token: str) -> str:
    """Hash under which a session token is stored; the raw token is never persisted."""

    return sha256_hex(token.encode("utf-8"))
