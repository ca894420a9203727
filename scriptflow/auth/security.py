"""Authentication utilities."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from scriptflow.config import get_settings

settings = get_settings()


def _matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> None:
    """
    Shared-secret check for the submission endpoint.

    Disabled when ``API_SECRET_KEY`` is empty (local development).
    """
    if not settings.api_secret_key:
        return

    if not _matches(x_api_key, settings.api_secret_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid API key",
        )


def verify_admin_key(x_admin_key: Optional[str] = Header(None)):
    """Verify admin access using a secret key."""
    if not _matches(x_admin_key, settings.secret_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )
    return True
