"""Public identifier issuance and link building."""

import logging
import re
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.config import get_settings
from scriptflow.db.models import Script

settings = get_settings()
logger = logging.getLogger(__name__)

PUBLIC_ID_BYTES = 6  # 48 bits -> 8 base64url chars
FALLBACK_PUBLIC_ID_BYTES = 9  # 72 bits -> 12 base64url chars
MAX_COLLISION_RETRIES = 3

_PUBLIC_ID_PATTERN = re.compile(r"^(?:[A-Za-z0-9_-]{8}|[A-Za-z0-9_-]{12})$")


def generate_public_id(nbytes: int = PUBLIC_ID_BYTES) -> str:
    """Cryptographically random, URL-safe identifier."""
    return secrets.token_urlsafe(nbytes)


def is_valid_public_id(public_id: str) -> bool:
    """Cheap format check done before any store lookup."""
    return bool(public_id) and _PUBLIC_ID_PATTERN.fullmatch(public_id) is not None


async def public_id_exists(db: AsyncSession, public_id: str) -> bool:
    result = await db.execute(select(Script.id).where(Script.public_id == public_id))
    return result.first() is not None


async def generate_unique_public_id(db: AsyncSession) -> str:
    """
    Generate a public ID not yet present in the artifact store.

    Retries up to three times on collision, then falls back to a longer
    token.
    """
    for _ in range(MAX_COLLISION_RETRIES):
        public_id = generate_public_id()
        if not await public_id_exists(db, public_id):
            return public_id
        logger.warning(f"Public ID collision detected: {public_id}, retrying...")

    return generate_public_id(FALLBACK_PUBLIC_ID_BYTES)


def build_script_url(public_id: str) -> str:
    return f"{settings.public_url_prefix}{public_id}"
