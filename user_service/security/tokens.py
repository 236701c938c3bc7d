"""Utilities for issuing user private tokens."""

from __future__ import annotations

import hashlib
import secrets

PRIVATE_TOKEN_BYTES = 15


def generate_private_token() -> str:
    """Return a fresh URL-safe private token for API authentication."""
    return secrets.token_urlsafe(PRIVATE_TOKEN_BYTES)


def fingerprint_token(token: str) -> str:
    """Return a short SHA-256 fingerprint suitable for log lines."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
