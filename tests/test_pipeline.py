"""Tests for the generation pipeline state machine."""

import pytest
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import func, select

from scriptflow.db.models import DatasetEntry, Job, JobStatus, ReelAnalysis, Script
from scriptflow.errors import AcquisitionError, AnalysisError, GenerationError, RenderError, UploadError
from scriptflow.services.pipeline import PipelineOutcome
from scriptflow.services.script_store import script_store


async def _job(kit, job_id: str) -> Job:
    async with kit.session_maker() as db:
        return (await db.execute(select(Job).where(Job.id == job_id))).scalar_one()


async def _count(kit, model) -> int:
    async with kit.session_maker() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_full_run_completes_and_delivers_once(kit):
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert result.script_url.startswith("https://scripts.test/s/")
    assert result.image_url == f"https://cdn.test/{payload['fingerprint']}.png"
    assert "generation_ms" in result.timings and "total_ms" in result.timings

    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 1
    assert job.active_fingerprint is None
    assert job.processing_time_ms is not None

    assert len(kit.notifier.deliveries) == 1
    delivery = kit.notifier.deliveries[0]
    assert delivery["subscriber_id"] == "u1"
    assert delivery["image_url"] == result.image_url
    assert delivery["script_url"] == result.script_url

    assert await _count(kit, Script) == 1
    assert await _count(kit, ReelAnalysis) == 1
    assert kit.renderer.refs == 0


@pytest.mark.asyncio
async def test_analysis_cache_is_shared_across_fingerprints(kit):
    first = await kit.queue_job(identity="u1", idea="cooking tip")
    second = await kit.queue_job(identity="u2", url="https://www.x/reels/abc?utm_source=ig", idea="gym routine")

    await kit.pipeline.process(first)
    result = await kit.pipeline.process(second)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert kit.downloader.calls == 1
    assert kit.backend.calls == 1
    assert await _count(kit, ReelAnalysis) == 1

    # The first script for this reel becomes style context for the second
    second_call = kit.generator.calls[1]
    assert second_call["style_examples"] == [kit.generator.text]
    assert second_call["analysis"].hook_type == "Stop scrolling"


@pytest.mark.asyncio
async def test_scenario_b_media_over_bound_goes_straight_to_fallback(kit):
    kit.downloader.error = AcquisitionError("Media too long: 300s > 90s", retryable=False)
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.FALLBACK
    assert kit.generator.calls == []

    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.FAILED
    assert job.is_fallback is True
    assert job.attempts == 1
    assert "too long" in job.error_message

    assert len(kit.notifier.deliveries) == 1
    async with kit.session_maker() as db:
        script = (await db.execute(select(Script))).scalar_one()
    assert script.is_fallback is True
    assert "cooking tip" in script.result_text
    assert script.result_text.startswith("[HOOK]")
    assert "[CTA]" in script.result_text


@pytest.mark.asyncio
async def test_scenario_c_frames_without_audio(kit):
    kit.extractor.with_audio = False
    kit.backend.payload = {
        "transcript": None,
        "visualCues": ["hands chopping onions", "overhead shot"],
        "hookType": "Negative visual",
        "tone": "Calm",
        "sceneDescriptions": ["kitchen counter"],
    }
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.COMPLETED
    media = kit.backend.seen[0]
    assert media.audio_path is None
    assert media.frame_paths

    analysis = kit.generator.calls[0]["analysis"]
    assert analysis.transcript is None
    assert analysis.visual_cues == ["hands chopping onions", "overhead shot"]


@pytest.mark.asyncio
async def test_nothing_extracted_continues_without_analysis(kit):
    kit.extractor.with_audio = False
    kit.extractor.with_frames = False
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert kit.backend.calls == 0
    assert kit.generator.calls[0]["analysis"] is None
    assert await _count(kit, ReelAnalysis) == 0


@pytest.mark.asyncio
async def test_retryable_failure_returns_retry_and_requeues_job(kit):
    kit.generator.errors = [GenerationError("model overloaded")]
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.RETRY
    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.QUEUED
    assert job.active_fingerprint == payload["fingerprint"]
    assert kit.notifier.deliveries == []

    # The next delivery of the work item succeeds and reuses the cached analysis
    result = await kit.pipeline.process(payload)
    assert result.outcome == PipelineOutcome.COMPLETED
    assert kit.downloader.calls == 1
    assert (await _job(kit, payload["job_id"])).attempts == 2
    assert len(kit.notifier.deliveries) == 1


@pytest.mark.asyncio
async def test_final_attempt_failure_falls_back(kit):
    kit.backend.error = RuntimeError("backend exploded")
    payload = await kit.queue_job()

    outcomes = [(await kit.pipeline.process(payload)).outcome for _ in range(3)]

    assert outcomes == [PipelineOutcome.RETRY, PipelineOutcome.RETRY, PipelineOutcome.FALLBACK]
    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.FAILED
    assert job.is_fallback is True
    assert job.attempts == 3
    assert "analysis" in job.error_message
    assert len(kit.notifier.deliveries) == 1


@pytest.mark.asyncio
async def test_unexpected_error_is_retried(kit):
    kit.generator.errors = [KeyError("boom")]
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.RETRY
    assert "boom" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", ["render", "upload"])
async def test_image_failure_on_final_attempt_delivers_text_only(kit, failing):
    if failing == "render":
        kit.renderer.error = RenderError("pool crashed")
    else:
        async def broken_upload(content, fingerprint, timeout=None):
            raise UploadError("bucket unavailable")

        kit.storage.upload_image = broken_upload
    payload = await kit.queue_job()

    first = await kit.pipeline.process(payload)
    second = await kit.pipeline.process(payload)
    final = await kit.pipeline.process(payload)

    assert first.outcome == second.outcome == PipelineOutcome.RETRY
    assert final.attempt == 3
    assert final.outcome == PipelineOutcome.COMPLETED
    assert final.image_url is None

    delivery = kit.notifier.deliveries[0]
    assert delivery["image_url"] is None
    assert delivery["script_text"] == kit.generator.text
    assert len(kit.notifier.deliveries) == 1

    async with kit.session_maker() as db:
        script = (await db.execute(select(Script))).scalar_one()
    assert script.result_image_ref is None
    assert script.is_fallback is False


@pytest.mark.asyncio
async def test_delivery_failure_never_fails_the_job(kit):
    kit.notifier.error = RuntimeError("manychat down")
    payload = await kit.queue_job()

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert result.delivery.delivered is False
    assert (await _job(kit, payload["job_id"])).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_redelivery_of_finished_job_is_skipped(kit):
    payload = await kit.queue_job()
    await kit.pipeline.process(payload)

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.SKIPPED
    assert len(kit.generator.calls) == 1
    assert len(kit.notifier.deliveries) == 1


@pytest.mark.asyncio
async def test_existing_script_is_delivered_without_regeneration(kit):
    payload = await kit.queue_job()
    await kit.pipeline.process(payload)

    # Work item for a second job on the same fingerprint, e.g. after a stale release
    again = await kit.queue_job()
    result = await kit.pipeline.process(again)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert len(kit.generator.calls) == 1
    assert len(kit.notifier.deliveries) == 2
    assert await _count(kit, Script) == 1


@pytest.mark.asyncio
async def test_every_failure_point_ends_with_one_delivery(kit):
    """Whatever breaks, the final attempt still produces exactly one delivery."""
    kit.downloader.error = AcquisitionError("network down", retryable=True)
    payload = await kit.queue_job()

    await kit.pipeline.process(payload)
    assert kit.notifier.deliveries == []

    kit.downloader.error = None
    kit.backend.error = AnalysisError("all backends failed")
    await kit.pipeline.process(payload)
    assert kit.notifier.deliveries == []

    kit.backend.error = None
    kit.generator.errors = [GenerationError("still overloaded")]
    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.FALLBACK
    assert len(kit.notifier.deliveries) == 1


@pytest.mark.asyncio
async def test_attempt_number_comes_from_the_job_row(kit):
    kit.generator.errors = [GenerationError("overloaded"), GenerationError("overloaded")]
    payload = await kit.queue_job()

    first = await kit.pipeline.process(payload)
    second = await kit.pipeline.process(payload)

    assert (first.attempt, second.attempt) == (1, 2)
    assert (await _job(kit, payload["job_id"])).attempts == 2


@pytest.mark.asyncio
async def test_redelivery_after_lost_workers_reaches_the_final_attempt(kit):
    """A worker killed mid-attempt redelivers the same work item; the lost claims still count."""
    kit.generator.errors = [GenerationError("overloaded")]
    payload = await kit.queue_job()
    await kit.claim_lost(payload)
    await kit.claim_lost(payload)

    result = await kit.pipeline.process(payload)

    assert result.attempt == 3
    assert result.outcome == PipelineOutcome.FALLBACK
    assert len(kit.notifier.deliveries) == 1
    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.FAILED
    assert job.is_fallback is True


@pytest.mark.asyncio
async def test_claim_past_the_last_attempt_delivers_text_only_without_media(kit):
    payload = await kit.queue_job()
    for _ in range(3):
        await kit.claim_lost(payload)

    result = await kit.pipeline.process(payload)

    assert result.outcome == PipelineOutcome.FALLBACK
    assert result.attempt == 4
    assert kit.downloader.calls == 0
    assert kit.generator.calls == []
    assert kit.renderer.rendered == []
    assert kit.notifier.deliveries[0]["image_url"] is None
    assert "[HOOK]" in kit.notifier.deliveries[0]["script_text"]


@pytest.mark.asyncio
async def test_soft_time_limit_is_not_treated_as_a_stage_failure(kit):
    kit.generator.errors = [SoftTimeLimitExceeded()]
    payload = await kit.queue_job()

    with pytest.raises(SoftTimeLimitExceeded):
        await kit.pipeline.process(payload)
    assert kit.notifier.deliveries == []
    assert kit.renderer.rendered == []


@pytest.mark.asyncio
async def test_time_limit_with_attempts_left_requeues_the_job(kit):
    kit.generator.errors = [SoftTimeLimitExceeded()]
    payload = await kit.queue_job()
    with pytest.raises(SoftTimeLimitExceeded):
        await kit.pipeline.process(payload)

    result = await kit.pipeline.handle_time_limit(payload)

    assert result.outcome == PipelineOutcome.RETRY
    assert result.attempt == 1
    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.QUEUED
    assert "time limit" in job.error_message
    assert kit.notifier.deliveries == []


@pytest.mark.asyncio
async def test_time_limit_on_final_attempt_delivers_text_only_fallback(kit):
    kit.generator.errors = [SoftTimeLimitExceeded()]
    payload = await kit.queue_job()
    await kit.claim_lost(payload)
    await kit.claim_lost(payload)
    with pytest.raises(SoftTimeLimitExceeded):
        await kit.pipeline.process(payload)

    result = await kit.pipeline.handle_time_limit(payload)

    assert result.outcome == PipelineOutcome.FALLBACK
    assert result.image_url is None
    assert kit.renderer.rendered == []
    assert kit.storage.uploads == []
    assert len(kit.notifier.deliveries) == 1
    assert kit.notifier.deliveries[0]["image_url"] is None

    job = await _job(kit, payload["job_id"])
    assert job.status == JobStatus.FAILED
    assert job.is_fallback is True
    assert job.active_fingerprint is None
    async with kit.session_maker() as db:
        script = (await db.execute(select(Script))).scalar_one()
    assert script.is_fallback is True


@pytest.mark.asyncio
async def test_time_limit_after_job_finished_is_skipped(kit):
    payload = await kit.queue_job()
    await kit.pipeline.process(payload)

    result = await kit.pipeline.handle_time_limit(payload)

    assert result.outcome == PipelineOutcome.SKIPPED
    assert len(kit.notifier.deliveries) == 1


@pytest.mark.asyncio
async def test_completed_job_records_one_dataset_entry(kit):
    payload = await kit.queue_job(tone="sarcastic")

    await kit.pipeline.process(payload)

    async with kit.session_maker() as db:
        entry = (await db.execute(select(DatasetEntry))).scalar_one()
    assert entry.job_id == payload["job_id"]
    assert entry.fingerprint == payload["fingerprint"]
    assert entry.input_features["user_idea"] == "cooking tip"
    assert entry.input_features["tone_hint"] == "sarcastic"
    assert entry.input_features["hook_type"] == "Stop scrolling"
    assert entry.output_features["generated_script"] == kit.generator.text
    assert set(entry.output_features["script_sections"]) == {"hook", "body", "cta"}
    assert entry.output_features["estimated_spoken_duration"] > 0
    assert entry.generation["script_model"] == "fake-model"
    assert entry.generation["attempts"] == 1
    assert "generation_ms" in entry.generation["timings"]
    assert entry.is_validated is False


@pytest.mark.asyncio
async def test_fallback_and_stored_script_paths_record_no_dataset_entry(kit):
    kit.downloader.error = AcquisitionError("private reel", retryable=False)
    failed = await kit.queue_job()
    await kit.pipeline.process(failed)

    assert await _count(kit, DatasetEntry) == 0

    # Same fingerprint again: the stored fallback script is re-delivered, nothing is generated
    again = await kit.queue_job()
    await kit.pipeline.process(again)
    assert await _count(kit, DatasetEntry) == 0


@pytest.mark.asyncio
async def test_time_limit_after_script_was_stored_completes_the_job(kit):
    payload = await kit.queue_job()
    for _ in range(3):
        await kit.claim_lost(payload)
    async with kit.session_maker() as db:
        await script_store.create_script(
            db,
            fingerprint=payload["fingerprint"],
            identity=payload["identity"],
            source_reference=payload["source_reference"],
            source_key=payload["source_key"],
            idea=payload["idea"],
            result_text=kit.generator.text,
            result_image_ref="https://cdn.test/card.png",
        )
        await db.commit()

    result = await kit.pipeline.handle_time_limit(payload)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert result.image_url == "https://cdn.test/card.png"
    assert (await _job(kit, payload["job_id"])).status == JobStatus.COMPLETED
    assert len(kit.notifier.deliveries) == 1
