"""The generation pipeline: one job from queued to delivered."""

import enum
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scriptflow.config import get_settings
from scriptflow.db.models import ACTIVE_JOB_STATUSES, Script
from scriptflow.db.session import create_worker_session_maker
from scriptflow.errors import RenderError, ScriptFlowError, UploadError
from scriptflow.schemas.schemas import ReelAnalysisPayload, ScriptJobPayload
from scriptflow.services.analysis_cache import analysis_cache
from scriptflow.services.analyzer import ReelAnalyzer, build_default_analyzer
from scriptflow.services.dataset import dataset_recorder
from scriptflow.services.generator import ScriptGenerator, build_fallback_script, script_generator
from scriptflow.services.job_service import job_service
from scriptflow.services.media import MediaExtractor, ReelDownloader, media_extractor, reel_downloader
from scriptflow.services.notifier import DeliveryReport, ManyChatNotifier, manychat_notifier
from scriptflow.services.public_links import build_script_url
from scriptflow.services.rendering import RenderEngine, render_engine
from scriptflow.services.script_store import script_store
from scriptflow.services.storage import StorageService, storage_service

settings = get_settings()
logger = logging.getLogger(__name__)


class PipelineOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FALLBACK = "fallback"
    RETRY = "retry"
    SKIPPED = "skipped"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    job_id: str
    script_url: Optional[str] = None
    image_url: Optional[str] = None
    error: Optional[str] = None
    attempt: int = 0
    delivery: Optional[DeliveryReport] = None
    timings: dict[str, int] = field(default_factory=dict)


def _elapsed_ms(since: float) -> int:
    return int((time.monotonic() - since) * 1000)


class ScriptPipeline:
    """
    Worker state machine for a single job.

    ``process`` claims the job, runs analysis (cache first), generation,
    rendering and link allocation, then delivers. A retryable failure before
    the final attempt returns ``RETRY`` and leaves the job queued for the
    next delivery of the work item. Anything else that goes wrong ends in the
    fallback branch, so every job finishes with exactly one delivery attempt.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        downloader: Optional[ReelDownloader] = None,
        extractor: Optional[MediaExtractor] = None,
        analyzer: Optional[ReelAnalyzer] = None,
        generator: Optional[ScriptGenerator] = None,
        renderer: Optional[RenderEngine] = None,
        storage: Optional[StorageService] = None,
        notifier: Optional[ManyChatNotifier] = None,
        max_attempts: Optional[int] = None,
        analysis_mode: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.downloader = downloader or reel_downloader
        self.extractor = extractor or media_extractor
        self.analyzer = analyzer or build_default_analyzer()
        self.generator = generator or script_generator
        self.renderer = renderer or render_engine
        self.storage = storage or storage_service
        self.notifier = notifier or manychat_notifier
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.analysis_mode = analysis_mode or settings.analysis_mode

    async def process(self, payload: Union[ScriptJobPayload, dict]) -> PipelineResult:
        """
        Run one attempt of a job.

        The attempt number is the job's claim count in the database, so a work
        item redelivered after its worker died still counts towards
        ``max_attempts``. A claim past the last attempt means every allowed
        attempt was lost with its worker; the job then ends text-only without
        touching the media again.
        """
        payload = ScriptJobPayload.model_validate(payload)
        job_id = payload.job_id
        started = time.monotonic()
        timings: dict[str, int] = {}

        async with self.session_maker() as db:
            job = await job_service.mark_processing(db, job_id)
            await db.commit()
        if job is None:
            logger.info(f"[{job_id}] Job already finished, skipping redelivery")
            return PipelineResult(PipelineOutcome.SKIPPED, job_id)

        attempt = job.attempts
        is_final = attempt >= self.max_attempts
        logger.info(f"[{job_id}] Processing attempt {attempt}/{self.max_attempts}")

        async with self.session_maker() as db:
            existing = await script_store.get_by_fingerprint(db, payload.fingerprint)
        if existing is not None:
            logger.info(f"[{job_id}] Script already stored, delivering without regeneration")
            return await self._finish_success(payload, existing, started, timings, attempt)

        if attempt > self.max_attempts:
            message = f"worker: attempt {attempt} exceeds {self.max_attempts}, earlier workers were lost"
            logger.error(f"[{job_id}] {message}")
            return await self._run_fallback(
                payload, message, started, timings, attempt, with_image=False
            )

        try:
            script, analysis = await self._run_stages(payload, is_final, timings)
        except SoftTimeLimitExceeded:
            raise
        except ScriptFlowError as e:
            error = e
        except Exception as e:
            logger.exception(f"[{job_id}] Unexpected pipeline error")
            error = ScriptFlowError(f"Unexpected error: {e!r}", retryable=True)
        else:
            result = await self._finish_success(payload, script, started, timings, attempt)
            await self._record_dataset(payload, script, analysis, attempt, timings)
            return result

        message = f"{error.stage}: {error}"
        if error.retryable and not is_final:
            logger.warning(f"[{job_id}] Retryable failure on attempt {attempt}: {message}")
            async with self.session_maker() as db:
                await job_service.mark_retrying(db, job_id, message)
                await db.commit()
            return PipelineResult(
                PipelineOutcome.RETRY, job_id, error=message, attempt=attempt, timings=timings
            )

        logger.error(f"[{job_id}] Giving up after attempt {attempt}: {message}")
        return await self._run_fallback(payload, message, started, timings, attempt)

    async def handle_time_limit(self, payload: Union[ScriptJobPayload, dict]) -> PipelineResult:
        """
        Settle a job whose attempt was cut off by the soft time limit.

        Attempts left: the job goes back to the queue. Final attempt: the
        fallback template is stored and delivered without an image, since
        only the window before the hard limit remains.
        """
        payload = ScriptJobPayload.model_validate(payload)
        job_id = payload.job_id
        started = time.monotonic()
        message = "worker: soft time limit exceeded"

        async with self.session_maker() as db:
            job = await job_service.get_job(db, job_id)
        if job is None or job.status not in ACTIVE_JOB_STATUSES:
            return PipelineResult(PipelineOutcome.SKIPPED, job_id)

        attempt = job.attempts
        if attempt < self.max_attempts:
            logger.warning(f"[{job_id}] Time limit on attempt {attempt}, requeueing")
            async with self.session_maker() as db:
                await job_service.mark_retrying(db, job_id, message)
                await db.commit()
            return PipelineResult(PipelineOutcome.RETRY, job_id, error=message, attempt=attempt)

        async with self.session_maker() as db:
            existing = await script_store.get_by_fingerprint(db, payload.fingerprint)
        if existing is not None:
            logger.info(f"[{job_id}] Time limit after the script was stored, completing")
            return await self._finish_success(payload, existing, started, {}, attempt)

        logger.error(f"[{job_id}] Time limit on final attempt {attempt}, delivering text only")
        return await self._run_fallback(payload, message, started, {}, attempt, with_image=False)

    # ---------- stages ----------

    async def _run_stages(
        self, payload: ScriptJobPayload, is_final: bool, timings: dict
    ) -> tuple[Script, Optional[ReelAnalysisPayload]]:
        analysis = await self._obtain_analysis(payload, timings)

        async with self.session_maker() as db:
            style_examples = await script_store.list_style_context(
                db,
                payload.source_key,
                limit=settings.style_context_limit,
                exclude_fingerprint=payload.fingerprint,
            )

        t = time.monotonic()
        text = await self.generator.generate(payload.idea, analysis, style_examples, payload.hints)
        timings["generation_ms"] = _elapsed_ms(t)

        image_url = await self._render_and_upload(payload, text, timings, tolerate_failure=is_final)
        script = await self._persist(payload, text, image_url, False, timings)
        return script, analysis

    async def _obtain_analysis(
        self, payload: ScriptJobPayload, timings: dict
    ) -> Optional[ReelAnalysisPayload]:
        job_id = payload.job_id

        async with self.session_maker() as db:
            cached = await analysis_cache.get(db, payload.source_key)
        if cached is not None:
            logger.info(f"[{job_id}] Analysis cache hit for {payload.source_key[:12]}")
            timings["analysis_ms"] = 0
            return cached

        temp_root = Path(settings.temp_dir)
        temp_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=temp_root))
        try:
            t = time.monotonic()
            media = await self.downloader.download(payload.source_reference, work_dir)
            timings["download_ms"] = _elapsed_ms(t)

            t = time.monotonic()
            extraction = await self.extractor.extract(
                media.path, work_dir, self.analysis_mode, media.duration
            )
            timings["extraction_ms"] = _elapsed_ms(t)
            if not extraction.has_content:
                logger.warning(f"[{job_id}] Nothing to analyse, continuing without analysis")
                return None

            t = time.monotonic()
            outcome = await self.analyzer.analyze(extraction)
            timings["analysis_ms"] = _elapsed_ms(t)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if outcome.partial:
            logger.info(f"[{job_id}] Partial analysis from {outcome.backend}, not caching")
            return outcome.payload

        try:
            async with self.session_maker() as db:
                await analysis_cache.store(
                    db, payload.source_key, payload.normalized_source, outcome.payload, outcome.backend
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"[{job_id}] Could not cache analysis: {e}")
        return outcome.payload

    async def _render_and_upload(
        self,
        payload: ScriptJobPayload,
        text: str,
        timings: dict,
        tolerate_failure: bool,
    ) -> Optional[str]:
        """Render and host the image. Returns None for a text-only result."""
        try:
            t = time.monotonic()
            self.renderer.acquire()
            try:
                png = await self.renderer.render(text, title=payload.idea)
            finally:
                self.renderer.release()
            timings["render_ms"] = _elapsed_ms(t)

            t = time.monotonic()
            image_url = await self.storage.upload_image(png, payload.fingerprint)
            timings["upload_ms"] = _elapsed_ms(t)
            return image_url
        except (RenderError, UploadError) as e:
            if not tolerate_failure:
                raise
            logger.warning(f"[{payload.job_id}] No image ({e.stage}: {e}), delivering text only")
            return None

    async def _persist(
        self,
        payload: ScriptJobPayload,
        text: str,
        image_url: Optional[str],
        is_fallback: bool,
        timings: dict,
    ) -> Script:
        async with self.session_maker() as db:
            script = await script_store.create_script(
                db,
                fingerprint=payload.fingerprint,
                identity=payload.identity,
                source_reference=payload.source_reference,
                source_key=payload.source_key,
                idea=payload.idea,
                result_text=text,
                result_image_ref=image_url,
                is_fallback=is_fallback,
                generation_timings=dict(timings),
            )
            await db.commit()
        return script

    async def _record_dataset(
        self,
        payload: ScriptJobPayload,
        script: Script,
        analysis: Optional[ReelAnalysisPayload],
        attempt: int,
        timings: dict,
    ):
        try:
            async with self.session_maker() as db:
                await dataset_recorder.record(
                    db,
                    payload,
                    script.result_text,
                    analysis,
                    script_model=self.generator.model_name,
                    attempts=attempt,
                    timings=timings,
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"[{payload.job_id}] Could not record dataset entry: {e}")

    async def _deliver(self, payload: ScriptJobPayload, script: Script) -> DeliveryReport:
        script_url = build_script_url(script.public_id)
        try:
            return await self.notifier.deliver(
                payload.identity,
                script_url,
                image_url=script.result_image_ref,
                script_text=script.result_text,
            )
        except Exception as e:
            logger.error(f"[{payload.job_id}] Delivery raised unexpectedly: {e!r}")
            return DeliveryReport(calls={"deliver": False})

    # ---------- terminal branches ----------

    async def _finish_success(
        self,
        payload: ScriptJobPayload,
        script: Script,
        started: float,
        timings: dict,
        attempt: int,
    ) -> PipelineResult:
        delivery = await self._deliver(payload, script)
        timings["total_ms"] = _elapsed_ms(started)

        async with self.session_maker() as db:
            await job_service.mark_completed(db, payload.job_id, processing_time_ms=timings["total_ms"])
            await db.commit()

        logger.info(f"[{payload.job_id}] Job completed in {timings['total_ms']}ms")
        return PipelineResult(
            PipelineOutcome.COMPLETED,
            payload.job_id,
            script_url=build_script_url(script.public_id),
            image_url=script.result_image_ref,
            attempt=attempt,
            delivery=delivery,
            timings=timings,
        )

    async def _run_fallback(
        self,
        payload: ScriptJobPayload,
        error_message: str,
        started: float,
        timings: dict,
        attempt: int,
        with_image: bool = True,
    ) -> PipelineResult:
        text = build_fallback_script(payload.idea, payload.hints)
        image_url = None
        if with_image:
            image_url = await self._render_and_upload(payload, text, timings, tolerate_failure=True)
        script = await self._persist(payload, text, image_url, True, timings)

        delivery = await self._deliver(payload, script)
        timings["total_ms"] = _elapsed_ms(started)

        async with self.session_maker() as db:
            await job_service.mark_failed(
                db,
                payload.job_id,
                error_message,
                is_fallback=True,
                processing_time_ms=timings["total_ms"],
            )
            await db.commit()

        return PipelineResult(
            PipelineOutcome.FALLBACK,
            payload.job_id,
            script_url=build_script_url(script.public_id),
            image_url=script.result_image_ref,
            error=error_message,
            attempt=attempt,
            delivery=delivery,
            timings=timings,
        )


_pipeline: Optional[ScriptPipeline] = None


def get_pipeline() -> ScriptPipeline:
    """Per-process pipeline wired to the worker session factory."""
    global _pipeline
    if _pipeline is None:
        _pipeline = ScriptPipeline(create_worker_session_maker())
    return _pipeline
