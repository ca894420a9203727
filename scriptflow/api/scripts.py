"""Script generation API routes."""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.auth.security import require_api_key
from scriptflow.db.session import get_db
from scriptflow.errors import QueueUnavailableError
from scriptflow.middleware.rate_limit import enforce_submission_rate_limit
from scriptflow.schemas.schemas import ErrorResponse, ScriptGenerateRequest, SubmissionResponse
from scriptflow.services.intake import Enqueuer, IntakeOutcome, intake_service
from scriptflow.services.public_links import build_script_url

router = APIRouter(prefix="/api/v1", tags=["Scripts"])


def get_job_enqueuer() -> Enqueuer:
    """Dependency returning the function that publishes work items."""
    from scriptflow.worker import enqueue_script_job

    return enqueue_script_job


@router.post(
    "/script/generate",
    response_model=SubmissionResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"description": "Missing or invalid API key"},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Request a script",
    description="Submit a reel and an idea. Returns immediately; the script is delivered asynchronously.",
)
async def generate_script(
    request: ScriptGenerateRequest,
    db: AsyncSession = Depends(get_db),
    enqueue: Enqueuer = Depends(get_job_enqueuer),
    _: None = Depends(require_api_key),
):
    """
    Accept a generation request.

    - **completed**: an identical request was already fulfilled; the stored
      result is returned and nothing is queued
    - **processing**: an identical request is already in flight
    - **queued**: a new job was created and handed to the workers
    """
    await enforce_submission_rate_limit(db, request.subscriber_id)

    try:
        result = await intake_service.submit(db, request, enqueue)
    except QueueUnavailableError:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Failed to queue request",
                detail="Please try again later",
                code="QUEUE_ERROR",
            ).model_dump(),
        )

    if result.outcome == IntakeOutcome.COMPLETED:
        script = result.script
        return SubmissionResponse(
            status="completed",
            message="Script already generated",
            script_text=script.result_text,
            image_url=script.result_image_ref,
            script_url=build_script_url(script.public_id),
        )

    if result.outcome == IntakeOutcome.PROCESSING:
        return SubmissionResponse(
            status="processing",
            message="Your script is already being generated",
            job_id=result.job_id,
        )

    return SubmissionResponse(
        status="queued",
        message="Your script is being generated",
        job_id=result.job_id,
    )
