"""
API Authentication for FastAPI endpoints
"""

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader, APIKeyQuery
from typing import List, Optional
import os
import hashlib
import hmac

# API Key header name
API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY = "api_key"

# Initialize API key security
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)
api_key_query = APIKeyQuery(name=API_KEY_QUERY, auto_error=False)


def get_api_key_from_env() -> Optional[str]:
    """Get API key from environment variable"""
    return os.getenv("API_KEY", "")


def get_admin_keys_from_env() -> List[str]:
    """Admin API keys (comma-separated ADMIN_API_KEYS)"""
    return [key.strip() for key in os.getenv("ADMIN_API_KEYS", "").split(",") if key.strip()]


def _matches(api_key: str, valid_keys: List[str]) -> bool:
    # Direct match
    if api_key in valid_keys:
        return True

    # Hash-based comparison allows storing hashed keys in env vars
    for valid_key in valid_keys:
        if valid_key.startswith("hash:"):
            stored_hash = valid_key[5:]  # Remove "hash:" prefix
            provided_hash = hashlib.sha256(api_key.encode()).hexdigest()
            if hmac.compare_digest(stored_hash, provided_hash):
                return True

    return False


def check_api_key(api_key: str) -> bool:
    """
    Verify API key against configured key

    Supports:
    - Single API key from environment variable
    - Multiple API keys (comma-separated)
    - Key hashing for secure comparison
    """
    configured_key = get_api_key_from_env()

    if not configured_key:
        # No API key configured - allow all requests (development mode)
        return True

    valid_keys = [key.strip() for key in configured_key.split(",")]
    return _matches(api_key, valid_keys)


def check_admin_key(api_key: Optional[str]) -> bool:
    """
    Verify that a caller may manage provider keys.

    Unlike `check_api_key` there is no development bypass: with no
    ADMIN_API_KEYS configured, nobody is an admin.
    """
    if not api_key:
        return False
    return _matches(api_key, get_admin_keys_from_env())


async def verify_admin_key(
    api_key_header: Optional[str] = Security(api_key_header),
    api_key_query: Optional[str] = Security(api_key_query)
) -> str:
    """
    Require an admin API key (header or query parameter)

    Usage:
        @router.get("/api/admin/keys")
        async def list_keys(api_key: str = Depends(verify_admin_key)):
            ...
    """
    api_key = api_key_header or api_key_query

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key missing. Provide X-API-Key header or ?api_key=YOUR_KEY",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not check_admin_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    return api_key
