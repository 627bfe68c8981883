"""Opaque credential generation."""

from __future__ import annotations

import secrets

__all__ = ["generate_secure_token"]


def generate_secure_token(nbytes: int = 32) -> str:
    """Return *nbytes* of CSPRNG output, base64url-encoded without padding."""
    return secrets.token_urlsafe(nbytes)
