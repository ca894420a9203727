"""Error taxonomy for the generation pipeline."""

from typing import Optional


class ScriptFlowError(Exception):
    """Base error. ``retryable`` decides whether a job-level retry is worth it."""

    retryable: bool = False
    stage: str = "pipeline"

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class QueueUnavailableError(ScriptFlowError):
    """The work item could not be handed to the broker."""

    stage = "intake"


class AcquisitionError(ScriptFlowError):
    """Media too large, too long, unavailable or the download failed.

    Bound and format problems are terminal; network problems are retryable.
    """

    stage = "acquisition"


class ExtractionError(ScriptFlowError):
    """No usable audio or frames. Never terminal."""

    stage = "extraction"


class AnalysisError(ScriptFlowError):
    """Every analysis backend failed."""

    retryable = True
    stage = "analysis"


class GenerationError(ScriptFlowError):
    retryable = True
    stage = "generation"


class RenderError(ScriptFlowError):
    retryable = True
    stage = "render"


class UploadError(ScriptFlowError):
    retryable = True
    stage = "upload"
