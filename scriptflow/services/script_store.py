"""Artifact store: one finished Script per fingerprint."""

import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.db.models import Script
from scriptflow.db.session import insert_ignoring_conflicts
from scriptflow.services.public_links import generate_unique_public_id

logger = logging.getLogger(__name__)

MAX_PUBLIC_ID_ATTEMPTS = 3


class ScriptStore:
    """Service for persisting and looking up generated scripts."""

    async def get_by_fingerprint(self, db: AsyncSession, fingerprint: str) -> Optional[Script]:
        result = await db.execute(
            select(Script)
            .where(Script.fingerprint == fingerprint)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_public_id(self, db: AsyncSession, public_id: str) -> Optional[Script]:
        result = await db.execute(
            select(Script)
            .where(Script.public_id == public_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_script(
        self,
        db: AsyncSession,
        *,
        fingerprint: str,
        identity: str,
        source_reference: str,
        source_key: str,
        idea: str,
        result_text: str,
        result_image_ref: Optional[str] = None,
        is_fallback: bool = False,
        generation_timings: Optional[dict] = None,
    ) -> Script:
        """
        Persist a Script if none exists for the fingerprint.

        A public ID is allocated per attempt. If the insert is ignored because
        another writer stored the same fingerprint first, that row wins and is
        returned unchanged. If it was ignored because the public ID was taken
        in the meantime, a fresh ID is drawn.
        """
        for _ in range(MAX_PUBLIC_ID_ATTEMPTS):
            public_id = await generate_unique_public_id(db)
            result = await db.execute(
                insert_ignoring_conflicts(db, Script).values(
                    id=str(uuid4()),
                    fingerprint=fingerprint,
                    public_id=public_id,
                    identity=identity,
                    source_reference=source_reference,
                    source_key=source_key,
                    idea=idea,
                    result_text=result_text,
                    result_image_ref=result_image_ref,
                    is_fallback=is_fallback,
                    generation_timings=generation_timings,
                )
            )

            script = await self.get_by_fingerprint(db, fingerprint)
            if script is not None:
                if result.rowcount != 1:
                    logger.info(f"Script for {fingerprint[:12]} already stored, keeping existing")
                return script

            logger.warning(f"Public ID {public_id} taken during insert, drawing a new one")

        raise RuntimeError(f"Could not allocate a public ID for {fingerprint[:12]}")

    async def list_style_context(
        self,
        db: AsyncSession,
        source_key: str,
        limit: int = 3,
        exclude_fingerprint: Optional[str] = None,
    ) -> list[str]:
        """Most recent non-fallback scripts written against the same source."""
        if limit <= 0:
            return []

        query = select(Script.result_text).where(
            Script.source_key == source_key,
            Script.is_fallback.is_(False),
        )
        if exclude_fingerprint:
            query = query.where(Script.fingerprint != exclude_fingerprint)

        result = await db.execute(query.order_by(Script.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def delete_by_fingerprint(self, db: AsyncSession, fingerprint: str) -> bool:
        """Invalidate a stored Script so the next identical request regenerates it."""
        result = await db.execute(delete(Script).where(Script.fingerprint == fingerprint))
        return (result.rowcount or 0) > 0


# Singleton instance
script_store = ScriptStore()
