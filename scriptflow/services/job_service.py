"""Job management service."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.db.models import ACTIVE_JOB_STATUSES, Job, JobStatus
from scriptflow.db.session import insert_ignoring_conflicts

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobService:
    """Service for creating jobs and moving them through their states."""

    async def create_job(
        self,
        db: AsyncSession,
        *,
        fingerprint: str,
        identity: str,
        source_reference: str,
        normalized_source: str,
        idea: str,
        hints: Optional[dict] = None,
    ) -> Optional[Job]:
        """
        Insert a queued job for a fingerprint.

        Returns:
            The new Job, or None if another active job already holds the
            fingerprint (a concurrent duplicate won the race).
        """
        job_id = str(uuid4())
        result = await db.execute(
            insert_ignoring_conflicts(db, Job).values(
                id=job_id,
                fingerprint=fingerprint,
                active_fingerprint=fingerprint,
                identity=identity,
                source_reference=source_reference,
                normalized_source=normalized_source,
                idea=idea,
                hints=hints,
                status=JobStatus.QUEUED,
                attempts=0,
                is_fallback=False,
            )
        )
        if result.rowcount != 1:
            return None
        return await self.get_job(db, job_id)

    async def get_job(self, db: AsyncSession, job_id: str) -> Optional[Job]:
        result = await db.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_in_flight_job(
        self,
        db: AsyncSession,
        fingerprint: str,
        stale_after_seconds: Optional[int] = None,
    ) -> Optional[Job]:
        """
        Find the active job for a fingerprint.

        A job stuck in queued/processing for longer than
        ``stale_after_seconds`` is released and not returned.
        """
        result = await db.execute(
            select(Job)
            .where(Job.active_fingerprint == fingerprint)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None or stale_after_seconds is None:
            return job

        created_at = as_utc(job.created_at)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
        if created_at is not None and created_at < cutoff:
            logger.warning(f"Releasing stale job {job.id} for fingerprint {fingerprint[:12]}")
            await self.mark_failed(db, job.id, "Job went stale before completing")
            return None
        return job

    async def mark_processing(self, db: AsyncSession, job_id: str) -> Optional[Job]:
        """Claim a job for an attempt. Returns None if it is already terminal."""
        job = await self.get_job(db, job_id)
        if job is None or job.status not in ACTIVE_JOB_STATUSES:
            return None

        values = {"status": JobStatus.PROCESSING, "attempts": Job.attempts + 1}
        if job.started_at is None:
            values["started_at"] = datetime.now(timezone.utc)
        await db.execute(update(Job).where(Job.id == job_id).values(**values))
        return await self.get_job(db, job_id)

    async def mark_retrying(self, db: AsyncSession, job_id: str, error_message: str):
        """Return a job to the queue after a retryable failure."""
        await db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(ACTIVE_JOB_STATUSES))
            .values(status=JobStatus.QUEUED, error_message=error_message)
        )

    async def mark_completed(
        self,
        db: AsyncSession,
        job_id: str,
        processing_time_ms: Optional[int] = None,
    ):
        await self._finish(db, job_id, JobStatus.COMPLETED, processing_time_ms=processing_time_ms)

    async def mark_failed(
        self,
        db: AsyncSession,
        job_id: str,
        error_message: str,
        is_fallback: bool = False,
        processing_time_ms: Optional[int] = None,
    ):
        await self._finish(
            db,
            job_id,
            JobStatus.FAILED,
            error_message=error_message,
            is_fallback=is_fallback,
            processing_time_ms=processing_time_ms,
        )

    async def _finish(
        self,
        db: AsyncSession,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        is_fallback: bool = False,
        processing_time_ms: Optional[int] = None,
    ):
        """Move a job to a terminal state and release its fingerprint."""
        update_data = {
            "status": status,
            "active_fingerprint": None,
            "completed_at": datetime.now(timezone.utc),
            "is_fallback": is_fallback,
        }
        if error_message is not None:
            update_data["error_message"] = error_message
        if processing_time_ms is not None:
            update_data["processing_time_ms"] = processing_time_ms

        await db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(ACTIVE_JOB_STATUSES))
            .values(**update_data)
        )


# Singleton instance
job_service = JobService()
