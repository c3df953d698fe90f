"""Job submission and status API endpoints.

This module implements:
- POST /api/jobs - Enqueue a generation job (optionally with prompt enrichment)
- GET /api/jobs/active - An owner's active jobs (UI polling)
- GET /api/jobs/{job_id} - Status of one job with queue position
- GET /api/queue/stats - Per-status counts across the queue

Enqueue is the only mutation here; everything else reads the Job Store.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from atelier.api.dependencies import get_engine
from atelier.engine import Engine
from atelier.services.exceptions import JobNotFoundError, ValidationError
from atelier.services.payload import PromptRequest
from atelier.services.status import ActiveJobView, JobStatusView, QueueStats, public_status

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["jobs"])


# Request/Response Models


class EnqueueJobRequest(BaseModel):
    """Request model for enqueuing a generation job."""

    owner_id: str = Field(..., min_length=1, max_length=255, description="Owning user id")
    row_id: str | None = Field(default=None, max_length=255, description="Request group id")
    variant_row_id: str | None = Field(
        default=None, max_length=255, description="Variant request group id"
    )
    payload: dict = Field(
        ...,
        description="Generation parameters: ref_paths, target_path, prompt, width, height, options",
    )
    prompt: PromptRequest | None = Field(
        default=None,
        description="Request prompt enrichment before dispatch (omit to use payload prompt)",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "owner_id": "user-123",
                "row_id": "row-1",
                "payload": {
                    "ref_paths": ["inputs/a.png"],
                    "target_path": "inputs/b.png",
                    "prompt": "Watercolor style",
                },
            }
        }
    }


class EnqueueJobResponse(BaseModel):
    """Response model for an accepted job."""

    job_id: UUID
    status: str
    prompt_job_id: UUID | None = None


# API Endpoints


@router.post("/jobs", response_model=EnqueueJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    request: EnqueueJobRequest,
    engine: Engine = Depends(get_engine),
) -> EnqueueJobResponse:
    """Enqueue a generation job and trigger dispatch (or prompt enrichment).

    Returns immediately; progress is observed by polling GET /api/jobs/{job_id}.

    Raises:
        HTTPException 400: Malformed payload or grouping ids
    """
    try:
        job = await engine.enqueue(
            request.payload,
            owner_id=request.owner_id,
            row_id=request.row_id,
            variant_row_id=request.variant_row_id,
            prompt_request=request.prompt,
        )
    except ValidationError as e:
        logger.warning("job.enqueue_rejected", owner_id=request.owner_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return EnqueueJobResponse(
        job_id=job.id,
        status=public_status(job.status),
        prompt_job_id=job.prompt_job_id,
    )


@router.get("/jobs/active", response_model=list[ActiveJobView])
async def list_active_jobs(
    owner_id: str = Query(..., min_length=1, description="Owner whose jobs to list"),
    engine: Engine = Depends(get_engine),
) -> list[ActiveJobView]:
    """List an owner's queued, submitted, running and saving jobs, oldest first."""
    return await engine.status.list_active(owner_id)


@router.get("/jobs/{job_id}", response_model=JobStatusView)
async def get_job_status(
    job_id: UUID,
    engine: Engine = Depends(get_engine),
) -> JobStatusView:
    """Get one job's status, step label and queue position.

    Raises:
        HTTPException 404: Job not found
    """
    try:
        return await engine.status.job_status(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/queue/stats", response_model=QueueStats)
async def get_queue_stats(engine: Engine = Depends(get_engine)) -> QueueStats:
    """Get job counts per status and prompt sub-queue statistics."""
    return await engine.status.queue_stats()
