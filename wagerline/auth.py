"""
API-key access control for Wagerline.

Every caller (operator console, payment webhook relay, player frontend)
sends its key in ``X-API-Key``.  Keys map to principal names; principals
listed in ADMIN_USERS may settle matches, credit accounts and manage
fixtures and promo codes.
"""

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
import os
from typing import Dict, Set
from dotenv import load_dotenv

from wagerline.core.errors import Forbidden

load_dotenv()

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_KEY_SLOTS = 5
DEV_FALLBACK_KEY = "dev-key-insecure"


def get_valid_api_keys() -> Dict[str, str]:
    """Key → principal, from API_KEY_USER1..API_KEY_USER5"""
    keys = {}
    for slot in range(1, MAX_KEY_SLOTS + 1):
        key = os.getenv(f"API_KEY_USER{slot}")
        if key:
            keys[key] = f"user{slot}"

    if not keys:
        # Local runs only; a deployment without keys refuses to serve
        if os.getenv("ENVIRONMENT") == "development":
            keys[DEV_FALLBACK_KEY] = "dev_user"
        else:
            raise ValueError("No API keys configured; set API_KEY_USER1")

    return keys


def get_admin_users() -> Set[str]:
    raw = os.getenv("ADMIN_USERS", "user1")
    return {u.strip() for u in raw.split(",") if u.strip()}


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """Resolve the caller's principal or answer 401."""
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Read per request so rotated keys apply without a restart
    principals = get_valid_api_keys()
    if api_key not in principals:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return principals[api_key]


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    """Settlement privilege: the principal must be listed in ADMIN_USERS."""
    if user not in get_admin_users():
        raise Forbidden("Admin access required", user=user)
    return user
