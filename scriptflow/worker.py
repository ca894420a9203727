"""Celery worker configuration and tasks."""

import asyncio
import logging

from celery import Celery, Task
from celery.exceptions import SoftTimeLimitExceeded
from celery.signals import worker_process_shutdown

from scriptflow.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "scriptflow_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_time_limit_seconds,
    task_soft_time_limit=settings.job_soft_time_limit_seconds,
    worker_concurrency=settings.queue_concurrency,
    worker_prefetch_multiplier=1,  # Fetch one job at a time
    task_acks_late=True,  # Ack after the job finishes
    task_reject_on_worker_lost=True,
    task_default_queue=settings.queue_name,
    result_expires=86400,
    broker_connection_timeout=settings.intake_enqueue_timeout_seconds,
    task_publish_retry=False,  # intake bounds the publish itself
)


def retry_countdown(attempt: int) -> int:
    """Exponential backoff before the next attempt, capped."""
    delay = settings.job_retry_backoff_seconds * (2 ** (attempt - 1))
    return min(delay, settings.job_retry_backoff_max_seconds)


class BaseTask(Task):
    """Base task. Retries are decided by the pipeline outcome, not by exceptions."""

    acks_late = True
    # the job row caps attempts; redeliveries do not advance request.retries
    max_retries = None


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="scriptflow.worker.process_script_job",
    rate_limit=settings.job_rate_limit or None,
)
def process_script_job(self, payload: dict) -> dict:
    """
    Run one job end-to-end.

    The attempt number is owned by the job row, not by ``self.request.retries``:
    a redelivery after a lost worker keeps the same retry count but still
    spends an attempt.

    Args:
        payload: ScriptJobPayload as a dict (job_id, fingerprint, identity,
            source_reference, normalized_source, source_key, idea, hints)

    Returns:
        Dict with the outcome and per-stage timings
    """
    from scriptflow.services.pipeline import PipelineOutcome, get_pipeline

    job_id = payload.get("job_id")
    pipeline = get_pipeline()

    try:
        result = asyncio.run(pipeline.process(payload))
    except SoftTimeLimitExceeded:
        logger.error(f"[{job_id}] Soft time limit hit")
        result = asyncio.run(pipeline.handle_time_limit(payload))

    if result.outcome == PipelineOutcome.RETRY:
        countdown = retry_countdown(result.attempt)
        logger.info(f"[{job_id}] Retrying in {countdown}s (attempt {result.attempt + 1})")
        raise self.retry(countdown=countdown)

    return {
        "job_id": result.job_id,
        "outcome": result.outcome.value,
        "attempt": result.attempt,
        "script_url": result.script_url,
        "image_url": result.image_url,
        "error": result.error,
        "timings": result.timings,
    }


@worker_process_shutdown.connect
def close_render_engine(**kwargs):
    from scriptflow.services.rendering import render_engine

    render_engine.shutdown()


def enqueue_script_job(payload: dict):
    """
    Publish a work item. The Celery task id is the job id, so a duplicate
    publish for the same job is recognisable in the broker and result backend.
    """
    process_script_job.apply_async(
        args=[payload],
        task_id=payload["job_id"],
        queue=settings.queue_name,
    )
