"""Read-only status projection over the Job Store (consumed by UI polling and admin tools)."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from atelier.models.job import Job, JobStatus, PromptStatus
from atelier.services.job_store import JobStore

# User-facing step labels (submitting is reported as queued)
STEP_LABELS = {
    JobStatus.QUEUED: "Waiting in queue",
    JobStatus.SUBMITTING: "Waiting in queue",
    JobStatus.SUBMITTED: "Submitted to provider",
    JobStatus.RUNNING: "Generating",
    JobStatus.SAVING: "Saving result",
    JobStatus.SUCCEEDED: "Done",
    JobStatus.FAILED: "Failed",
}


def public_status(status: JobStatus) -> str:
    """Map a stored status to the externally visible one."""
    if status == JobStatus.SUBMITTING:
        return JobStatus.QUEUED.value
    return status.value


class JobStatusView(BaseModel):
    """Full status of one job."""

    id: UUID
    owner_id: str
    status: str
    step: str
    row_id: str | None = None
    variant_row_id: str | None = None
    prompt_status: str | None = None
    provider_request_id: str | None = None
    queue_position: int | None = Field(
        default=None, description="FIFO rank among the owner's queued jobs (queued only)"
    )
    attempts: int = 0
    output_paths: list[str] = Field(default_factory=list)
    error: str | None = None
    failure_kind: str | None = None
    created_at: datetime
    updated_at: datetime


class ActiveJobView(BaseModel):
    """Entry of an owner's active job list."""

    id: UUID
    status: str
    row_id: str | None = None
    variant_row_id: str | None = None
    created_at: datetime


class QueueStats(BaseModel):
    """Per-status job counts plus prompt sub-queue statistics."""

    queued: int = 0
    submitted: int = 0
    running: int = 0
    saving: int = 0
    succeeded: int = 0
    failed: int = 0
    prompt_pending: int = 0
    prompt_generating: int = 0
    prompt_completed: int = 0
    prompt_failed: int = 0
    prompt_average_wait_seconds: float = 0.0


class StatusService:
    """Builds status views from Job Store reads. Never mutates."""

    def __init__(self, store: JobStore):
        self.store = store

    async def job_status(self, job_id: UUID) -> JobStatusView:
        """Status of one job with its queue position.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        snapshot = await self.store.snapshot(job_id)
        return self._job_view(snapshot.job, snapshot.queue_position)

    async def list_active(self, owner_id: str) -> list[ActiveJobView]:
        """An owner's queued/submitted/running/saving jobs, oldest first."""
        jobs = await self.store.list_active(owner_id)
        return [
            ActiveJobView(
                id=job.id,
                status=public_status(job.status),
                row_id=job.row_id,
                variant_row_id=job.variant_row_id,
                created_at=job.created_at,
            )
            for job in jobs
        ]

    async def queue_stats(self) -> QueueStats:
        """Counts per status across all owners.

        Claimed jobs (submitting) are counted as queued.
        """
        counts = await self.store.status_counts()
        prompt_counts = await self.store.prompt_status_counts()
        average_wait = await self.store.prompt_average_wait_seconds()
        return QueueStats(
            queued=counts[JobStatus.QUEUED] + counts[JobStatus.SUBMITTING],
            submitted=counts[JobStatus.SUBMITTED],
            running=counts[JobStatus.RUNNING],
            saving=counts[JobStatus.SAVING],
            succeeded=counts[JobStatus.SUCCEEDED],
            failed=counts[JobStatus.FAILED],
            prompt_pending=prompt_counts[PromptStatus.PENDING],
            prompt_generating=prompt_counts[PromptStatus.GENERATING],
            prompt_completed=prompt_counts[PromptStatus.COMPLETED],
            prompt_failed=prompt_counts[PromptStatus.FAILED],
            prompt_average_wait_seconds=round(average_wait, 2),
        )

    @staticmethod
    def _job_view(job: Job, queue_position: int | None) -> JobStatusView:
        return JobStatusView(
            id=job.id,
            owner_id=job.owner_id,
            status=public_status(job.status),
            step=STEP_LABELS[job.status],
            row_id=job.row_id,
            variant_row_id=job.variant_row_id,
            prompt_status=job.prompt_status.value if job.prompt_status else None,
            provider_request_id=job.provider_request_id,
            queue_position=queue_position,
            attempts=job.attempts,
            output_paths=list(job.output_paths or []),
            error=job.error,
            failure_kind=job.failure_kind.value if job.failure_kind else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
