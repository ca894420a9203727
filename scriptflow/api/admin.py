"""Admin maintenance routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.auth.security import verify_admin_key
from scriptflow.db.session import get_db
from scriptflow.services.analysis_cache import analysis_cache
from scriptflow.services.script_store import script_store

router = APIRouter(prefix="/v1/admin", tags=["Admin"])

logger = logging.getLogger(__name__)


@router.delete(
    "/analysis-cache",
    summary="Reset the analysis cache",
    description="Delete every cached reel analysis. Admin only.",
)
async def reset_analysis_cache(
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    deleted = await analysis_cache.reset(db)
    await db.commit()
    logger.info(f"Analysis cache reset, {deleted} entries removed")
    return {"deleted": deleted}


@router.delete(
    "/scripts/{fingerprint}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Invalidate a stored script",
    description="Remove the stored script for a fingerprint so the next identical request regenerates it.",
)
async def invalidate_script(
    fingerprint: str,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    deleted = await script_store.delete_by_fingerprint(db, fingerprint)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No script stored for fingerprint {fingerprint}",
        )
    await db.commit()
