"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

import pytest

from atelier.core.timezone import utc_now
from atelier.models.job import Job, JobStatus
from atelier.models.prompt_job import PromptJob


def make_job(row_id: str = "row-1") -> Job:
    return Job(
        owner_id="owner-1",
        row_id=row_id,
        request_payload={"ref_paths": [], "target_path": "b.png", "prompt": "x"},
    )


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Changes made within the context should persist after the context exits."""
    async with await uow_factory() as uow:
        job = await uow.jobs.add(make_job())
        job_id = job.id

    async with await uow_factory() as uow:
        found = await uow.jobs.get_by_id(job_id)
        assert found is not None
        assert found.status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """If an exception is raised within the context:
    1. Changes should be rolled back
    2. Exception should propagate (not be swallowed)
    """
    job = make_job()

    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.jobs.add(job)
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.jobs.get_by_id(job.id) is None


@pytest.mark.asyncio
async def test_uow_multiple_operations_atomic(uow_factory):
    """A job and its prompt job are written together or not at all."""
    job = make_job()

    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            await uow.jobs.add(job)
            prompt_job = PromptJob(job_id=job.id, owner_id="owner-1", target_path="b.png")
            await uow.prompt_jobs.add(prompt_job)
            raise RuntimeError("Simulated failure after both writes")

    async with await uow_factory() as uow:
        assert await uow.jobs.get_by_id(job.id) is None
        assert await uow.prompt_jobs.get_by_id(prompt_job.id) is None


@pytest.mark.asyncio
async def test_timestamps_are_stored_as_naive_utc(uow_factory):
    """Jobs are written and read back with naive UTC timestamps."""
    async with await uow_factory() as uow:
        job = await uow.jobs.add(make_job())
        job_id = job.id

    async with await uow_factory() as uow:
        found = await uow.jobs.get_by_id(job_id)
        assert found.created_at.tzinfo is None
        assert found.updated_at.tzinfo is None
        assert abs((utc_now() - found.created_at).total_seconds()) < 60
