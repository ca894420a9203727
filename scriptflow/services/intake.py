"""Intake and idempotency gate for script generation requests."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.config import get_settings
from scriptflow.db.models import Script
from scriptflow.errors import QueueUnavailableError
from scriptflow.schemas.schemas import ScriptGenerateRequest, ScriptHints, ScriptJobPayload
from scriptflow.services.fingerprint import (
    compute_fingerprint,
    normalize_source_reference,
    source_cache_key,
)
from scriptflow.services.job_service import job_service
from scriptflow.services.script_store import script_store

settings = get_settings()
logger = logging.getLogger(__name__)

Enqueuer = Callable[[dict], None]


class IntakeOutcome(str, enum.Enum):
    COMPLETED = "completed"
    QUEUED = "queued"
    PROCESSING = "processing"


@dataclass
class IntakeResult:
    outcome: IntakeOutcome
    fingerprint: str
    job_id: Optional[str] = None
    script: Optional[Script] = None


class IntakeService:
    """
    Decide, without doing any pipeline work, what a submission turns into.

    A fingerprint with a stored Script is answered from the store. A
    fingerprint with an active job is reported as processing. Anything else
    becomes a new queued job handed to ``enqueue``.
    """

    async def submit(
        self,
        db: AsyncSession,
        request: ScriptGenerateRequest,
        enqueue: Enqueuer,
    ) -> IntakeResult:
        normalized = normalize_source_reference(request.reel_url)
        hints = request.hints
        fingerprint = compute_fingerprint(request.subscriber_id, normalized, request.user_idea, hints)

        script = await script_store.get_by_fingerprint(db, fingerprint)
        if script is not None:
            logger.info(f"Fingerprint {fingerprint[:12]} served from store")
            return IntakeResult(IntakeOutcome.COMPLETED, fingerprint, script=script)

        in_flight = await job_service.get_in_flight_job(
            db, fingerprint, stale_after_seconds=settings.job_stale_after_seconds
        )
        if in_flight is not None:
            return IntakeResult(IntakeOutcome.PROCESSING, fingerprint, job_id=in_flight.id)

        job = await job_service.create_job(
            db,
            fingerprint=fingerprint,
            identity=request.subscriber_id,
            source_reference=request.reel_url,
            normalized_source=normalized,
            idea=request.user_idea,
            hints=hints,
        )
        await db.commit()

        if job is None:
            # A concurrent duplicate inserted the active job first
            logger.info(f"Fingerprint {fingerprint[:12]} lost the insert race, already processing")
            return IntakeResult(IntakeOutcome.PROCESSING, fingerprint)

        payload = ScriptJobPayload(
            job_id=job.id,
            fingerprint=fingerprint,
            identity=job.identity,
            source_reference=job.source_reference,
            normalized_source=normalized,
            source_key=source_cache_key(normalized),
            idea=job.idea,
            hints=ScriptHints(**hints),
        )

        try:
            await asyncio.wait_for(
                asyncio.to_thread(enqueue, payload.model_dump()),
                timeout=settings.intake_enqueue_timeout_seconds,
            )
        except Exception as e:
            logger.error(f"[{job.id}] Failed to enqueue job: {e!r}")
            await job_service.mark_failed(db, job.id, f"Enqueue failed: {e!r}")
            await db.commit()
            raise QueueUnavailableError("Failed to queue the request") from e

        logger.info(f"[{job.id}] Queued job for fingerprint {fingerprint[:12]}")
        return IntakeResult(IntakeOutcome.QUEUED, fingerprint, job_id=job.id)


# Singleton instance
intake_service = IntakeService()
