"""Script generation with Gemini, plus the idea-only fallback template."""

import asyncio
import logging
import re
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from scriptflow.config import get_settings
from scriptflow.errors import GenerationError
from scriptflow.schemas.schemas import ReelAnalysisPayload, ScriptHints

settings = get_settings()
logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """You are a creative strategist for short-form video.
Study the structure, pacing and hook of a reference reel and write a new
script for a different idea in the same style.
Rules:
- No hashtags, no emojis, no markdown. Plain text only.
- Stage directions go in (parentheses).
- Short, punchy sentences."""

GENERATION_CONFIG = {
    "temperature": 0.85,
    "top_p": 0.95,
    "top_k": 40,
    "max_output_tokens": 2048,
}

SECTION_MARKERS = ("[HOOK]", "[BODY]", "[CTA]")

_MARKDOWN_EMPHASIS = re.compile(r"(\*\*|__|\*|`)")


def build_generation_prompt(
    idea: str,
    analysis: Optional[ReelAnalysisPayload],
    style_examples: list[str],
    hints: ScriptHints,
) -> str:
    lines = ["REFERENCE REEL:"]
    if analysis is None or analysis.is_empty:
        lines.append("(No analysis available. Write a strong generic short-form script.)")
    else:
        lines.append(f"Hook type: {analysis.hook_type}")
        lines.append(f"Tone: {analysis.tone}")
        if analysis.transcript:
            lines.append(f"Transcript: {analysis.transcript}")
        else:
            lines.append("Transcript: (none, rely on visuals)")
        if analysis.visual_cues:
            lines.append("Visual cues: " + "; ".join(analysis.visual_cues))
        if analysis.scene_descriptions:
            lines.append("Scenes: " + "; ".join(analysis.scene_descriptions))

    if style_examples:
        lines.append("")
        lines.append("PREVIOUS SCRIPTS WRITTEN FROM THIS REEL (match their voice, do not copy):")
        for i, example in enumerate(style_examples, 1):
            lines.append(f"--- Example {i} ---")
            lines.append(example)

    lines.append("")
    lines.append(f'NEW IDEA: "{idea}"')
    if hints.tone:
        lines.append(f"Preferred tone: {hints.tone}")
    if hints.language:
        lines.append(f"Write in: {hints.language}")
    else:
        lines.append("Write in the same language and dialect as the reference speaker.")

    lines.append("")
    if hints.mode == "hook_only":
        lines.append("Write ONLY the opening hook, formatted as:\n[HOOK]\n(opening line + visual cue)")
    else:
        lines.append(
            "Structure the output exactly like this:\n"
            "[HOOK]\n(opening line + visual cue)\n\n"
            "[BODY]\n(main insight)\n\n"
            "[CTA]\n(call to action)"
        )
    lines.append("Return only the script.")
    return "\n".join(lines)


def clean_script_text(text: str, mode: str = "full") -> str:
    """Strip markdown emphasis and keep only the requested sections."""
    text = _MARKDOWN_EMPHASIS.sub("", text).strip()

    hook_at = text.find("[HOOK]")
    if hook_at > 0:
        text = text[hook_at:]
    elif hook_at == -1:
        text = f"[HOOK]\n{text}"

    if mode == "hook_only":
        body_at = text.find("[BODY]")
        if body_at != -1:
            text = text[:body_at]
    return text.strip()


def build_fallback_script(idea: str, hints: Optional[ScriptHints] = None) -> str:
    """Idea-only template used when the pipeline cannot produce a real script."""
    hints = hints or ScriptHints()
    hook = f"[HOOK]\n(Start with a strong statement about {idea})"
    if hints.mode == "hook_only":
        return hook
    return (
        f"{hook}\n\n"
        f"[BODY]\n(Explain your main point about {idea})\n\n"
        "[CTA]\n(Tell them to comment or follow)"
    )


class ScriptGenerator:
    """Write a script with the primary model, switching once to the fallback model."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        fallback_model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.model_name = model_name or settings.generation_model
        self.fallback_model_name = fallback_model_name or settings.generation_fallback_model
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.timeout = timeout or settings.generation_timeout_seconds

    async def _complete(self, model_name: str, prompt: str) -> str:
        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(
            model_name=model_name,
            generation_config=GENERATION_CONFIG,
            system_instruction=SYSTEM_INSTRUCTION,
        )
        response = await asyncio.wait_for(model.generate_content_async(prompt), timeout=self.timeout)
        return response.text or ""

    async def generate(
        self,
        idea: str,
        analysis: Optional[ReelAnalysisPayload],
        style_examples: Optional[list[str]] = None,
        hints: Optional[ScriptHints] = None,
    ) -> str:
        """
        Generate the script text.

        Raises:
            GenerationError: on empty output or when every model failed.
        """
        hints = hints or ScriptHints()
        prompt = build_generation_prompt(idea, analysis, style_examples or [], hints)

        try:
            try:
                text = await self._complete(self.model_name, prompt)
            except (google_exceptions.NotFound, google_exceptions.ResourceExhausted) as e:
                logger.warning(f"{self.model_name} unavailable ({e.code}), using {self.fallback_model_name}")
                text = await self._complete(self.fallback_model_name, prompt)
        except asyncio.TimeoutError as e:
            raise GenerationError("Script generation timed out") from e
        except google_exceptions.GoogleAPIError as e:
            raise GenerationError(f"Script generation failed: {e}") from e
        except ValueError as e:
            # response.text raises ValueError when the candidate was blocked
            raise GenerationError(f"Model returned no usable text: {e}") from e

        if not text.strip():
            raise GenerationError("Model returned an empty script")
        return clean_script_text(text, hints.mode)


# Singleton instance
script_generator = ScriptGenerator()
