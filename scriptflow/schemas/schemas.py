"""Pydantic schemas for request/response validation."""

from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from scriptflow.config import get_settings
from scriptflow.services.fingerprint import normalize_idea, normalize_source_reference, source_host

settings = get_settings()


# ============== Submission Schemas ==============


class ScriptGenerateRequest(BaseModel):
    """Request to generate a script from a reel and an idea."""

    subscriber_id: str = Field(..., min_length=1, max_length=128, description="Caller identity")
    reel_url: str = Field(..., max_length=2048, description="URL of the reference reel")
    user_idea: str = Field(..., max_length=1000, description="What the new script should be about")
    tone_hint: Optional[str] = Field(None, max_length=64, description="Optional tone preference")
    language_hint: Optional[str] = Field(None, max_length=32, description="Optional output language")
    mode: Literal["full", "hook_only"] = Field("full", description="Full script or hook only")

    @field_validator("subscriber_id")
    @classmethod
    def strip_identity(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Subscriber ID is required")
        return v

    @field_validator("reel_url")
    @classmethod
    def validate_reel_url(cls, v: str) -> str:
        normalized = normalize_source_reference(v)
        allowed = {h.lower() for h in settings.allowed_source_hosts}
        if allowed and source_host(normalized) not in allowed:
            raise ValueError("Source host is not supported")
        return v.strip()

    @field_validator("user_idea")
    @classmethod
    def validate_idea(cls, v: str) -> str:
        v = normalize_idea(v)
        if len(v) < 4:
            raise ValueError("User idea must be longer than 3 characters")
        return v

    @field_validator("tone_hint", "language_hint", mode="before")
    @classmethod
    def blank_hint_to_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @property
    def hints(self) -> dict:
        return {"tone": self.tone_hint, "language": self.language_hint, "mode": self.mode}


class SubmissionResponse(BaseModel):
    """Synchronous answer of the intake gate."""

    status: Literal["completed", "queued", "processing"]
    message: str
    job_id: Optional[str] = None
    script_text: Optional[str] = None
    image_url: Optional[str] = None
    script_url: Optional[str] = None


class ScriptHints(BaseModel):
    tone: Optional[str] = None
    language: Optional[str] = None
    mode: Literal["full", "hook_only"] = "full"


class ScriptJobPayload(BaseModel):
    """Work item carried by the queue."""

    job_id: str
    fingerprint: str
    identity: str
    source_reference: str
    normalized_source: str
    source_key: str
    idea: str
    hints: ScriptHints = Field(default_factory=ScriptHints)


# ============== Analysis Schemas ==============


class ReelAnalysisPayload(BaseModel):
    """
    Structured analysis of a reel.

    Validated at the boundary of every analysis backend. Optional fields
    default; wrong types reject the whole payload.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transcript: Optional[str] = None
    visual_cues: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("visual_cues", "visualCues")
    )
    hook_type: str = Field("Unknown", validation_alias=AliasChoices("hook_type", "hookType"))
    tone: str = "Unknown"
    scene_descriptions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("scene_descriptions", "sceneDescriptions"),
    )

    @field_validator("transcript", mode="before")
    @classmethod
    def empty_transcript_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("visual_cues", "scene_descriptions", mode="before")
    @classmethod
    def null_list_to_empty(cls, v):
        return [] if v is None else v

    @field_validator("hook_type", "tone", mode="before")
    @classmethod
    def null_label_to_unknown(cls, v):
        return "Unknown" if v is None else v

    @property
    def is_empty(self) -> bool:
        return not (self.transcript or self.visual_cues or self.scene_descriptions)


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
