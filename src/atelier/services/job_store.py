"""Job Store service - the only mutation surface for Job and PromptJob records.

Each operation runs in its own Unit of Work (one transaction). Workers never
write job fields directly; they call transition() so every move is validated
against the state machine and guarded against concurrent writers.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

import structlog

from atelier.core.timezone import utc_now
from atelier.models.job import FailureKind, Job, JobStatus, PromptStatus
from atelier.models.prompt_job import (
    DEFAULT_PRIORITY,
    ENHANCE_PRIORITY,
    PromptJob,
    PromptOperation,
)
from atelier.repositories.job import ClaimFilter
from atelier.services.exceptions import ConflictError, JobNotFoundError, ValidationError
from atelier.services.payload import PromptRequest, parse_generation_request
from atelier.services.prompt_validator import validate_prompt

logger = structlog.get_logger(__name__)


@dataclass
class JobSnapshot:
    """A job together with its derived queue position."""

    job: Job
    queue_position: int | None


class JobStore:
    """Durable record of generation jobs and their prompt dependencies."""

    def __init__(self, uow_factory, prompt_max_retries: int = 3):
        """Initialize store.

        Args:
            uow_factory: Factory from create_uow_factory()
            prompt_max_retries: Retry budget given to new prompt jobs
        """
        self.uow_factory = uow_factory
        self.prompt_max_retries = prompt_max_retries

    async def enqueue(
        self,
        payload: dict[str, Any],
        owner_id: str,
        row_id: str | None = None,
        variant_row_id: str | None = None,
        prompt_request: PromptRequest | None = None,
    ) -> Job:
        """Create a job in queued (and its prompt job, when enrichment is requested).

        Args:
            payload: Raw generation parameters (references, target, prompt, dimensions, options)
            owner_id: Owning user
            row_id: Request group (exactly one of row_id / variant_row_id)
            variant_row_id: Variant request group
            prompt_request: Optional prompt enrichment request

        Returns:
            The persisted job

        Raises:
            ValidationError: If the payload or grouping references are malformed
        """
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if bool(row_id) == bool(variant_row_id):
            raise ValidationError("Exactly one of row_id or variant_row_id must be set")

        request = parse_generation_request(payload)

        needs_prompt = prompt_request is None or prompt_request.operation == PromptOperation.ENHANCE
        if needs_prompt:
            try:
                validate_prompt(request.prompt or "")
            except ValueError as e:
                raise ValidationError(f"Invalid prompt: {e}") from e

        async with await self.uow_factory() as uow:
            job = Job(
                owner_id=owner_id,
                row_id=row_id,
                variant_row_id=variant_row_id,
                request_payload=request.to_payload(),
                prompt_status=PromptStatus.PENDING if prompt_request else None,
            )
            await uow.jobs.add(job)

            if prompt_request is not None:
                priority = prompt_request.priority or (
                    ENHANCE_PRIORITY
                    if prompt_request.operation == PromptOperation.ENHANCE
                    else DEFAULT_PRIORITY
                )
                prompt_job = PromptJob(
                    job_id=job.id,
                    owner_id=owner_id,
                    operation=prompt_request.operation,
                    ref_paths=list(request.ref_paths),
                    target_path=request.target_path,
                    existing_prompt=request.prompt,
                    instructions=prompt_request.instructions,
                    priority=priority,
                    max_retries=self.prompt_max_retries,
                )
                await uow.prompt_jobs.add(prompt_job)
                job.prompt_job_id = prompt_job.id
                await uow.jobs.add(job)

        logger.info(
            "job.enqueued",
            job_id=str(job.id),
            owner_id=owner_id,
            prompt_job_id=str(job.prompt_job_id) if job.prompt_job_id else None,
        )
        return job

    async def get(self, job_id: UUID) -> Job:
        """Retrieve a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def snapshot(self, job_id: UUID) -> JobSnapshot:
        """Retrieve a job with its queue position (None unless queued).

        Raises:
            JobNotFoundError: If the job does not exist
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            position = None
            if job.status == JobStatus.QUEUED:
                position = await uow.jobs.queue_position(job)
        return JobSnapshot(job=job, queue_position=position)

    async def transition(
        self,
        job_id: UUID,
        from_states: Iterable[JobStatus],
        to_state: JobStatus,
        expected_version: int | None = None,
        **fields: Any,
    ) -> Job:
        """Atomically move a job from one of from_states to to_state.

        Raises:
            ConflictError: If the job is no longer in from_states (or at expected_version)
            InvalidStateTransition: If the move is not in the state machine
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.transition(
                job_id, from_states, to_state, expected_version=expected_version, **fields
            )
        logger.debug(
            "job.transitioned",
            job_id=str(job_id),
            to_status=to_state.value,
            version=job.version,
        )
        return job

    async def claim_next(
        self, claim_filter: ClaimFilter, limit: int, scan_limit: int = 100
    ) -> list[Job]:
        """Claim up to limit eligible queued jobs (queued -> submitting) in one transaction."""
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.claim_next(claim_filter, limit, scan_limit=scan_limit)
        if jobs:
            logger.info("job.claimed", count=len(jobs), job_ids=[str(j.id) for j in jobs])
        return jobs

    async def find_stuck(
        self,
        states: Iterable[JobStatus],
        older_than: timedelta,
        owner_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Jobs sitting in one of states for at least older_than."""
        cutoff = utc_now() - older_than
        async with await self.uow_factory() as uow:
            return await uow.jobs.find_stuck(states, cutoff, owner_id=owner_id, limit=limit)

    async def list_failed(
        self, kinds: Iterable[FailureKind], owner_id: str | None = None
    ) -> list[Job]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_failed(kinds, owner_id=owner_id)

    async def list_active(self, owner_id: str) -> list[Job]:
        """An owner's non-terminal jobs ordered by creation time."""
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_active(owner_id)

    async def list_pollable(self, saving_lease: timedelta, limit: int = 100) -> list[Job]:
        """Jobs whose provider status should be polled now."""
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_pollable(utc_now() - saving_lease, limit=limit)

    async def count_in_flight(self) -> int:
        async with await self.uow_factory() as uow:
            return await uow.jobs.count_in_flight()

    async def status_counts(self) -> dict[JobStatus, int]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.status_counts()

    # Prompt sub-queue operations

    async def get_prompt_job(self, prompt_job_id: UUID) -> PromptJob | None:
        async with await self.uow_factory() as uow:
            return await uow.prompt_jobs.get_by_id(prompt_job_id)

    async def claim_prompt_jobs(self, limit: int) -> list[PromptJob]:
        """Claim pending prompt jobs (pending -> generating) and mark their parents generating."""
        async with await self.uow_factory() as uow:
            prompt_jobs = await uow.prompt_jobs.claim_pending(limit)
            for prompt_job in prompt_jobs:
                await uow.jobs.set_prompt_status(
                    prompt_job.job_id, {PromptStatus.PENDING}, PromptStatus.GENERATING
                )
        if prompt_jobs:
            logger.info("prompt.claimed", count=len(prompt_jobs))
        return prompt_jobs

    async def complete_prompt_job(self, prompt_job: PromptJob, prompt: str) -> Job:
        """Record the generated prompt and write it into the parent job, atomically.

        Raises:
            ConflictError: If the prompt job or the parent's prompt was already resolved
        """
        async with await self.uow_factory() as uow:
            await uow.prompt_jobs.transition(
                prompt_job.id,
                {PromptStatus.GENERATING},
                PromptStatus.COMPLETED,
                generated_prompt=prompt,
                error=None,
                completed_at=utc_now(),
            )
            job = await uow.jobs.apply_generated_prompt(prompt_job.job_id, prompt)
        logger.info(
            "prompt.completed",
            prompt_job_id=str(prompt_job.id),
            job_id=str(prompt_job.job_id),
        )
        return job

    async def retry_prompt_job(
        self, prompt_job: PromptJob, error: str, next_attempt_at: datetime
    ) -> PromptJob:
        """Return a generating prompt job to pending after a failed attempt."""
        async with await self.uow_factory() as uow:
            updated = await uow.prompt_jobs.transition(
                prompt_job.id,
                {PromptStatus.GENERATING},
                PromptStatus.PENDING,
                expected_version=prompt_job.version,
                retry_count=prompt_job.retry_count + 1,
                next_attempt_at=next_attempt_at,
                error=error,
            )
            await uow.jobs.set_prompt_status(
                prompt_job.job_id, {PromptStatus.GENERATING}, PromptStatus.PENDING
            )
        return updated

    async def fail_prompt_job(self, prompt_job: PromptJob, error: str) -> Job | None:
        """Fail a prompt job and its parent job (if the parent is still queued).

        Returns:
            The failed parent job, or None if the parent had already moved on

        Raises:
            ConflictError: If the prompt job itself was already resolved
        """
        message = f"Prompt generation failed: {error}"
        async with await self.uow_factory() as uow:
            await uow.prompt_jobs.transition(
                prompt_job.id,
                {PromptStatus.PENDING, PromptStatus.GENERATING},
                PromptStatus.FAILED,
                error=error,
                completed_at=utc_now(),
            )
            try:
                job = await uow.jobs.transition(
                    prompt_job.job_id,
                    {JobStatus.QUEUED},
                    JobStatus.FAILED,
                    error=message,
                    failure_kind=FailureKind.PROMPT_FAILED,
                    prompt_status=PromptStatus.FAILED,
                )
            except ConflictError:
                job = None

        logger.warning(
            "prompt.failed",
            prompt_job_id=str(prompt_job.id),
            job_id=str(prompt_job.job_id),
            error_message=error,
            parent_failed=job is not None,
        )
        return job

    async def reset_prompt_job(self, prompt_job: PromptJob) -> PromptJob:
        """Return a generating prompt job to pending with a fresh retry budget."""
        async with await self.uow_factory() as uow:
            updated = await uow.prompt_jobs.transition(
                prompt_job.id,
                {PromptStatus.GENERATING},
                PromptStatus.PENDING,
                expected_version=prompt_job.version,
                retry_count=0,
                next_attempt_at=None,
                error=None,
            )
            await uow.jobs.set_prompt_status(
                prompt_job.job_id, {PromptStatus.GENERATING}, PromptStatus.PENDING
            )
        return updated

    async def find_stuck_prompt_jobs(
        self, states: Iterable[PromptStatus], older_than: timedelta
    ) -> list[PromptJob]:
        async with await self.uow_factory() as uow:
            return await uow.prompt_jobs.find_stuck(states, utc_now() - older_than)

    async def find_expired_prompt_jobs(self, max_age: timedelta) -> list[PromptJob]:
        async with await self.uow_factory() as uow:
            return await uow.prompt_jobs.find_pending_created_before(utc_now() - max_age)

    async def prompt_status_counts(self) -> dict[PromptStatus, int]:
        async with await self.uow_factory() as uow:
            return await uow.prompt_jobs.status_counts()

    async def prompt_average_wait_seconds(self) -> float:
        async with await self.uow_factory() as uow:
            return await uow.prompt_jobs.average_wait_seconds()
