"""
Generation endpoints router

Thin HTTP layer over the GenerationOrchestrator. Every endpoint that
starts long-running work returns 202 with a job id; progress is read
back through GET /api/jobs/{job_id}.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Path, Request

from models import ConflictReport, JobSpec
from pipeline.orchestrator import GenerationOrchestrator
from schemas import (
    ConflictCheckRequest,
    ErrorResponse,
    JobStatusResponse,
    KeyframesRequest,
    RegenerateRequest,
    RetrySegmentRequest,
    SubmitJobRequest,
    SubmitJobResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["Generation"])


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Orchestrator created by the application lifespan"""
    return request.app.state.orchestrator


async def _accepted(orchestrator: GenerationOrchestrator, job_id: str, message: str) -> SubmitJobResponse:
    job = await orchestrator.get_job_status(job_id)
    return SubmitJobResponse(job_id=job_id, status=job.status, message=message)


@router.post(
    "/jobs",
    response_model=SubmitJobResponse,
    status_code=202,
    responses={
        202: {"description": "Generation job created successfully"},
        400: {"model": ErrorResponse, "description": "Invalid input data"},
    },
    summary="Generate Storyboard",
    description="Start keyframe, video and voice generation for every segment of a storyboard"
)
async def submit_job(
    body: SubmitJobRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Start generating a storyboard.

    Keyframes are chained hook -> body so each segment opens where the
    previous one ended; CTA segments are generated alongside. Video and
    voice are rendered per segment once keyframes resolve. Progress is
    checkpointed after every segment.
    """
    logger.info(
        "generate_request_received",
        storyboard_id=body.storyboard.id,
        segments=len(body.storyboard.segments),
        mode=body.storyboard.meta.mode,
    )
    spec = JobSpec(storyboard=body.storyboard, enhance=body.enhance, generate_video=body.generate_video)
    job_id = await orchestrator.submit_job(spec)
    return await _accepted(orchestrator, job_id, "Generation job created successfully")


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    summary="Get Job Status",
)
async def get_job_status(
    job_id: str = Path(..., description="Unique job identifier (UUID)"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Current status and (partial) result of a job.

    **Status Values:**
    - `pending`: Job is created and waiting to start
    - `processing`: Job is running; completed segments are already in `result`
    - `completed`: Every processed segment completed
    - `failed`: At least one segment failed, or the job itself failed
    """
    job = await orchestrator.get_job_status(job_id)
    return JobStatusResponse(
        job_id=job.id,
        kind=job.kind,
        status=job.status,
        result=job.result,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post(
    "/jobs/{job_id}/segments/{index}/retry",
    response_model=SubmitJobResponse,
    status_code=202,
    responses={
        404: {"model": ErrorResponse, "description": "Job or segment not found"},
        409: {"model": ErrorResponse, "description": "Job is still processing"},
    },
    summary="Retry Segment",
)
async def retry_segment(
    job_id: str = Path(..., description="Storyboard job identifier"),
    index: int = Path(..., ge=0, description="Segment index"),
    body: Optional[RetrySegmentRequest] = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Regenerate one failed segment with fresh predictions."""
    alternative_index = body.alternative_index if body else None
    logger.info("segment_retry_request", job_id=job_id, segment_index=index, alternative=alternative_index)
    job_id = await orchestrator.retry_segment(job_id, index, alternative_index)
    return await _accepted(orchestrator, job_id, f"Segment {index} retry started")


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
    summary="Cancel Job",
)
async def cancel_job(
    job_id: str = Path(..., description="Unique job identifier (UUID)"),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Stop waiting on a running job's predictions."""
    job = await orchestrator.cancel_job(job_id)
    return JobStatusResponse(
        job_id=job.id,
        kind=job.kind,
        status=job.status,
        result=job.result,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post(
    "/keyframes",
    response_model=SubmitJobResponse,
    status_code=202,
    summary="Generate Segment Keyframes",
)
async def submit_keyframes(
    body: KeyframesRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Generate first and last keyframes for a single segment."""
    job_id = await orchestrator.submit_keyframes(body.segment, body.context)
    return await _accepted(orchestrator, job_id, "Keyframe job created successfully")


@router.post(
    "/conflicts/check",
    response_model=ConflictReport,
    responses={400: {"model": ErrorResponse, "description": "Invalid input data"}},
    summary="Check Hook Conflict",
)
async def check_conflict(
    body: ConflictCheckRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Check whether a body segment's solution item contradicts the hook.

    Items the character brings into the scene must be visible in at least
    one hook frame. Items the character merely uses are not checked.
    """
    return await orchestrator.check_conflict(body.body_segment, body.hook_frames)


@router.post(
    "/conflicts/regenerate",
    response_model=SubmitJobResponse,
    status_code=202,
    responses={400: {"model": ErrorResponse, "description": "Invalid input data"}},
    summary="Regenerate Storyboard",
)
async def regenerate_excluding(
    body: RegenerateRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Plan a new storyboard that avoids the given item. The input storyboard
    is not changed; the new one is in the job result under `storyboard`.
    """
    logger.info("regenerate_request_received", storyboard_id=body.storyboard.id, item=body.item)
    job_id = await orchestrator.submit_regeneration(body.item.strip(), body.storyboard, body.hook_frames)
    return await _accepted(orchestrator, job_id, "Regeneration job created successfully")
