"""Tier-1 analysis cache keyed by normalized source reference."""

import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.db.models import ReelAnalysis
from scriptflow.db.session import insert_ignoring_conflicts
from scriptflow.schemas.schemas import ReelAnalysisPayload

logger = logging.getLogger(__name__)


class AnalysisCache:
    """
    Lookup-or-store of expensive reel analyses.

    Entries are shared by every requester and idea that references the same
    source. Reads never mutate; writes are create-if-absent and a lost race
    against another worker is not an error. There is no expiry, only
    :meth:`reset`.
    """

    async def get(self, db: AsyncSession, cache_key: str) -> Optional[ReelAnalysisPayload]:
        result = await db.execute(
            select(ReelAnalysis.analysis_payload).where(ReelAnalysis.cache_key == cache_key)
        )
        payload = result.scalar_one_or_none()
        if payload is None:
            return None

        try:
            return ReelAnalysisPayload.model_validate(payload)
        except ValidationError:
            logger.warning(f"Ignoring malformed cached analysis {cache_key[:12]}")
            return None

    async def store(
        self,
        db: AsyncSession,
        cache_key: str,
        normalized_source: str,
        analysis: ReelAnalysisPayload,
        backend: Optional[str] = None,
    ) -> bool:
        """
        Persist an analysis if none exists for the key.

        Returns:
            True if this call created the entry, False if it already existed.
        """
        result = await db.execute(
            insert_ignoring_conflicts(db, ReelAnalysis).values(
                cache_key=cache_key,
                normalized_source=normalized_source,
                analysis_payload=analysis.model_dump(mode="json"),
                backend=backend,
            )
        )
        created = result.rowcount == 1
        if not created:
            logger.info(f"Analysis for {cache_key[:12]} already cached by another worker")
        return created

    async def reset(self, db: AsyncSession) -> int:
        """Bulk-delete every cached analysis. Returns the number of rows removed."""
        result = await db.execute(delete(ReelAnalysis))
        return result.rowcount or 0


# Singleton instance
analysis_cache = AnalysisCache()
