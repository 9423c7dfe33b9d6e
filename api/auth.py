"""
Auth — API Key Validation

Keys come from RAGEBAITER_API_KEYS (comma-separated). Only their SHA-256
hashes are kept. With no keys configured, auth is disabled (dev mode) and
callers may name themselves with X-User-Id for quota purposes.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from ragebaiter.config import settings

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
USER_ID_HEADER = APIKeyHeader(name="X-User-Id", auto_error=False)


def hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def load_key_hashes(raw_keys: str) -> set[str]:
    return {hash_key(key.strip()) for key in raw_keys.split(",") if key.strip()}


_VALID_KEY_HASHES: set[str] = load_key_hashes(settings.API_KEYS)

# Dev mode: if no keys configured, auth is disabled
AUTH_ENABLED = len(_VALID_KEY_HASHES) > 0


def _verify_key(api_key: str) -> bool:
    if not api_key:
        return False
    return hash_key(api_key) in _VALID_KEY_HASHES


async def require_api_key(
    api_key: Optional[str] = Security(API_KEY_HEADER),
) -> Optional[str]:
    """
    FastAPI dependency that validates the API key.

    Returns the first 12 hex chars of the key hash (the caller's key id,
    safe to log) or None in dev mode.
    """
    if not AUTH_ENABLED:
        return None

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header.",
        )

    if not _verify_key(api_key):
        raise HTTPException(
            status_code=403,
            detail="Invalid API key.",
        )

    return hash_key(api_key)[:12]


def resolve_user_id(key_id: Optional[str], declared_user_id: Optional[str]) -> Optional[str]:
    """Quota identity: the authenticated key id, else the dev-mode X-User-Id header."""
    if key_id:
        return key_id
    if not AUTH_ENABLED and declared_user_id and declared_user_id.strip():
        return declared_user_id.strip()
    return None


def generate_api_key() -> str:
    """Generate a new API key. Utility for key provisioning."""
    return f"rb_{secrets.token_urlsafe(32)}"
