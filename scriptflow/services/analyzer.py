"""Content analysis of a reel through an ordered list of backends."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import google.generativeai as genai
from celery.exceptions import SoftTimeLimitExceeded
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError

from scriptflow.config import get_settings
from scriptflow.errors import AnalysisError
from scriptflow.schemas.schemas import ReelAnalysisPayload
from scriptflow.services.media import ExtractionResult
from scriptflow.services.transcription import whisper_transcriber

settings = get_settings()
logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """
Analyze this short video (frames and/or audio) and extract structured data
for writing a new script in the same style.

Return JSON only, with this structure:
{
  "transcript": "Full spoken text from the audio, or null if there is none",
  "visual_cues": ["Key visual elements, styles or actions shown"],
  "hook_type": "Psychological hook used in the opening (e.g. 'Stop scrolling', 'Controversial statement', 'Unknown')",
  "tone": "Overall emotional tone (e.g. 'High Energy', 'Educational', 'Sarcastic')",
  "scene_descriptions": ["Chronological description of the scenes"]
}
"""


def extract_json_object(text: str) -> dict:
    """Parse the outermost ``{...}`` in a model response."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError("No JSON object in model response")
    data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    return data


def is_rate_limited(exc: Exception) -> bool:
    return isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests))


@dataclass
class AnalysisOutcome:
    payload: ReelAnalysisPayload
    backend: str
    partial: bool = False


class AnalysisBackend:
    """One way of turning extracted media into an analysis payload."""

    name: str = "backend"
    partial: bool = False

    def accepts(self, media: ExtractionResult) -> bool:
        return media.has_content

    async def analyze(self, media: ExtractionResult) -> dict:
        raise NotImplementedError


class GeminiAnalysisBackend(AnalysisBackend):
    """Multimodal analysis with one Gemini model."""

    def __init__(self, model_name: str, api_key: Optional[str] = None):
        self.model_name = model_name
        self.name = f"gemini:{model_name}"
        self.api_key = api_key if api_key is not None else settings.gemini_api_key

    def _build_parts(self, media: ExtractionResult) -> list:
        parts: list = [ANALYSIS_PROMPT]
        for frame in media.frame_paths:
            parts.append({"mime_type": "image/jpeg", "data": frame.read_bytes()})
        if media.audio_path is not None:
            parts.append({"mime_type": "audio/wav", "data": media.audio_path.read_bytes()})
        return parts

    async def analyze(self, media: ExtractionResult) -> dict:
        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(
            model_name=self.model_name,
            generation_config={"temperature": 0.2, "response_mime_type": "application/json"},
        )
        parts = await asyncio.to_thread(self._build_parts, media)
        response = await model.generate_content_async(parts)
        return extract_json_object(response.text or "")


class LocalTranscriptBackend(AnalysisBackend):
    """Transcript-only analysis with local Whisper. Always partial."""

    name = "whisper"
    partial = True

    def accepts(self, media: ExtractionResult) -> bool:
        return media.audio_path is not None

    async def analyze(self, media: ExtractionResult) -> dict:
        transcript = await asyncio.to_thread(whisper_transcriber.transcribe, media.audio_path)
        return {"transcript": transcript}


class ReelAnalyzer:
    """
    Try each backend in order until one yields a valid payload.

    Every backend output is validated against ``ReelAnalysisPayload``; a
    malformed shape counts as that backend failing. Rate-limited backends
    cause a short pause before the next one is tried.
    """

    def __init__(
        self,
        backends: list[AnalysisBackend],
        timeout: Optional[float] = None,
        rate_limit_pause: Optional[float] = None,
    ):
        self.backends = backends
        self.timeout = timeout or settings.analysis_timeout_seconds
        self.rate_limit_pause = (
            settings.analysis_rate_limit_pause_seconds if rate_limit_pause is None else rate_limit_pause
        )

    async def analyze(self, media: ExtractionResult) -> AnalysisOutcome:
        last_error: Optional[Exception] = None

        for backend in self.backends:
            if not backend.accepts(media):
                continue

            try:
                logger.info(f"Attempting analysis with {backend.name}")
                raw = await asyncio.wait_for(backend.analyze(media), timeout=self.timeout)
                payload = ReelAnalysisPayload.model_validate(raw)
                logger.info(f"Analysis succeeded with {backend.name}")
                return AnalysisOutcome(payload=payload, backend=backend.name, partial=backend.partial)
            except ValidationError as e:
                last_error = e
                logger.warning(f"{backend.name} returned a malformed analysis: {e.error_count()} errors")
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"{backend.name} timed out after {self.timeout}s")
            except SoftTimeLimitExceeded:
                raise
            except Exception as e:
                last_error = e
                logger.warning(f"{backend.name} failed: {e}")
                if is_rate_limited(e) and self.rate_limit_pause > 0:
                    await asyncio.sleep(self.rate_limit_pause)

        raise AnalysisError(f"All analysis backends failed: {last_error!r}")


def build_default_analyzer() -> ReelAnalyzer:
    backends: list[AnalysisBackend] = []
    if settings.gemini_api_key:
        backends.extend(GeminiAnalysisBackend(name) for name in settings.analysis_models)
    else:
        logger.warning("GEMINI_API_KEY is not set, remote analysis disabled")
    if settings.whisper_fallback_enabled:
        backends.append(LocalTranscriptBackend())
    return ReelAnalyzer(backends)
