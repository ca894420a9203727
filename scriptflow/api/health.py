"""Health check routes."""

import asyncio

import redis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow import __version__
from scriptflow.config import get_settings
from scriptflow.db.session import get_db
from scriptflow.schemas.schemas import HealthResponse

router = APIRouter(tags=["System"])

settings = get_settings()


def _ping_redis() -> bool:
    client = redis.from_url(
        settings.redis_url, socket_connect_timeout=1, socket_timeout=1
    )
    try:
        return bool(client.ping())
    finally:
        client.close()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Always answers 200 while the process is up; ``status`` is ``degraded``
    when the database or Redis cannot be reached.
    """
    redis_status = "ok"
    try:
        await asyncio.to_thread(_ping_redis)
    except Exception:
        redis_status = "error"

    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    overall_status = "healthy"
    if "error" in (redis_status, db_status):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        database=db_status,
        redis=redis_status,
    )
