"""Training dataset records for completed generations."""

import logging
import re
from typing import Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.db.models import DatasetEntry
from scriptflow.db.session import insert_ignoring_conflicts
from scriptflow.schemas.schemas import ReelAnalysisPayload, ScriptJobPayload
from scriptflow.services.rendering import parse_script_sections

logger = logging.getLogger(__name__)

DATASET_VERSION = "2.0.0"
PROMPT_VERSION = "steal-artist-v2.0"

# Average speaking rate for short-form video, 150 words per minute
WORDS_PER_SECOND = 2.5

_DIRECTION_PATTERN = re.compile(r"\(([^()]*)\)")


def count_words(text: Optional[str]) -> int:
    return len(text.split()) if text else 0


def extract_visual_directions(text: str) -> list[str]:
    """Parenthesised stage directions, e.g. ``(zoom in)``."""
    return [match.strip() for match in _DIRECTION_PATTERN.findall(text) if match.strip()]


def extract_dialogue_lines(text: str) -> list[str]:
    """Spoken lines: section bodies with markers and directions removed."""
    lines = []
    for _, body in parse_script_sections(text):
        for line in body.splitlines():
            spoken = _DIRECTION_PATTERN.sub("", line).strip()
            if spoken:
                lines.append(spoken)
    return lines


def estimate_spoken_duration(text: str) -> float:
    """Seconds it takes to say the dialogue out loud."""
    words = sum(count_words(line) for line in extract_dialogue_lines(text))
    return round(words / WORDS_PER_SECOND, 1)


def build_input_features(
    payload: ScriptJobPayload, analysis: Optional[ReelAnalysisPayload]
) -> dict:
    features = {
        "video_url": payload.source_reference,
        "normalized_source": payload.normalized_source,
        "user_idea": payload.idea,
        "tone_hint": payload.hints.tone,
        "language_hint": payload.hints.language,
        "mode": payload.hints.mode,
        "has_analysis": analysis is not None,
    }
    if analysis is not None:
        features.update(
            {
                "transcript": analysis.transcript,
                "transcript_word_count": count_words(analysis.transcript),
                "visual_cues": analysis.visual_cues,
                "hook_type": analysis.hook_type,
                "detected_tone": analysis.tone,
                "scene_descriptions": analysis.scene_descriptions,
            }
        )
    return features


def build_output_features(text: str) -> dict:
    sections = {label.lower(): body for label, body in parse_script_sections(text) if label}
    return {
        "generated_script": text,
        "script_sections": sections,
        "visual_directions": extract_visual_directions(text),
        "dialogue_lines": extract_dialogue_lines(text),
        "script_length_chars": len(text),
        "estimated_spoken_duration": estimate_spoken_duration(text),
        "hook_length_chars": len(sections.get("hook", "")),
        "body_length_chars": len(sections.get("body", "")),
        "cta_length_chars": len(sections.get("cta", "")),
    }


class DatasetRecorder:
    """Writes one dataset entry per completed job."""

    async def record(
        self,
        db: AsyncSession,
        payload: ScriptJobPayload,
        text: str,
        analysis: Optional[ReelAnalysisPayload],
        script_model: Optional[str],
        attempts: int,
        timings: dict,
    ) -> bool:
        """Insert the entry. Returns False if the job already has one."""
        result = await db.execute(
            insert_ignoring_conflicts(db, DatasetEntry).values(
                id=str(uuid4()),
                job_id=payload.job_id,
                fingerprint=payload.fingerprint,
                source_key=payload.source_key,
                input_features=build_input_features(payload, analysis),
                output_features=build_output_features(text),
                generation={
                    "script_model": script_model,
                    "prompt_version": PROMPT_VERSION,
                    "attempts": attempts,
                    "timings": dict(timings),
                },
                dataset_version=DATASET_VERSION,
                is_validated=False,
                included_in_training=False,
            )
        )
        if result.rowcount != 1:
            logger.info(f"[{payload.job_id}] Dataset entry already recorded")
            return False
        return True


# Singleton instance
dataset_recorder = DatasetRecorder()
