"""Dispatcher tests.

Covers the claim-and-submit cycle and the polling pass against a scripted provider:
- Happy path queued → submitted → running → succeeded with persisted outputs
- ProviderRejected fails the job without requeue
- ProviderUnavailable requeues with backoff until the attempt budget is spent
- Repeated cycles never submit the same job twice
"""

import pytest
from fakes import RUNNING, age_job, failed, sample_payload, succeeded

from atelier.core.timezone import utc_now
from atelier.models.job import FailureKind, JobStatus
from atelier.services.exceptions import (
    ProviderRecordNotFound,
    ProviderRejected,
    ProviderUnavailable,
    StorageObjectNotFound,
    StorageUnavailable,
)


@pytest.mark.asyncio
async def test_happy_path_reaches_succeeded(store, dispatcher, provider, storage):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    assert job.status == JobStatus.QUEUED

    result = await dispatcher.run_cycle()
    assert result.claimed == 1
    assert result.submitted == 1

    job = await store.get(job.id)
    assert job.status == JobStatus.SUBMITTED
    assert job.provider_request_id == "p-1"
    assert job.provider == "fake"
    # References first, target last
    assert storage.signed == ["a.png", "b.png"]

    provider.poll_script["p-1"] = [RUNNING]
    await dispatcher.poll_active()
    job = await store.get(job.id)
    assert job.status == JobStatus.RUNNING

    provider.poll_script["p-1"] = [succeeded("https://cdn.test/out-1.png")]
    poll = await dispatcher.poll_active()
    assert poll.succeeded == 1

    job = await store.get(job.id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.provider_request_id == "p-1"
    assert job.output_paths == ["outputs/owner-1/out-1.png"]
    assert storage.saved == [("https://cdn.test/out-1.png", "owner-1")]


@pytest.mark.asyncio
async def test_rejected_submission_fails_without_requeue(store, dispatcher, provider):
    provider.submit_script = [ProviderRejected("invalid dims")]
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    result = await dispatcher.run_cycle()

    assert result.failed == 1
    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error == "invalid dims"
    assert job.failure_kind == FailureKind.REJECTED
    assert job.provider_request_id is None
    assert job.attempts == 0

    # Nothing is left to claim
    again = await dispatcher.run_cycle()
    assert again.claimed == 0
    assert len(provider.submissions) == 1


@pytest.mark.asyncio
async def test_unavailable_provider_requeues_with_backoff(store, dispatcher, provider):
    provider.submit_script = [ProviderUnavailable("503 from provider")]
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    before = utc_now()
    result = await dispatcher.run_cycle()

    assert result.requeued == 1
    job = await store.get(job.id)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.provider_request_id is None
    # First retry waits base_seconds (15s)
    delay = (job.next_attempt_at - before).total_seconds()
    assert 14 <= delay <= 16

    # Not eligible until the backoff expires
    again = await dispatcher.run_cycle()
    assert again.claimed == 0


@pytest.mark.asyncio
async def test_unavailable_provider_fails_after_max_attempts(store, dispatcher, provider):
    provider.submit_script = [ProviderUnavailable("timeout")] * 3
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    for expected_attempts in (1, 2):
        await dispatcher.run_cycle()
        job = await store.get(job.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == expected_attempts
        # Skip the backoff delay
        await store.transition(
            job.id,
            {JobStatus.QUEUED},
            JobStatus.SUBMITTING,
        )
        await store.transition(
            job.id,
            {JobStatus.SUBMITTING},
            JobStatus.QUEUED,
            attempts=job.attempts,
            next_attempt_at=None,
        )

    await dispatcher.run_cycle()
    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.failure_kind == FailureKind.UNAVAILABLE
    assert job.error == "timeout"


@pytest.mark.asyncio
async def test_missing_input_object_fails_job(store, dispatcher, storage):
    storage.missing.add("b.png")
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    await dispatcher.run_cycle()

    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.failure_kind == FailureKind.REJECTED
    assert "b.png" in job.error


@pytest.mark.asyncio
async def test_repeated_cycles_do_not_resubmit(store, dispatcher, provider):
    await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await store.enqueue(sample_payload(), owner_id="owner-2", row_id="row-2")

    first = await dispatcher.run_cycle()
    second = await dispatcher.run_cycle()
    third = await dispatcher.run_cycle()

    assert first.submitted == 2
    assert second.claimed == 0
    assert third.claimed == 0
    assert len(provider.submissions) == 2
    assert len(set(provider.submissions)) == 2


@pytest.mark.asyncio
async def test_cycle_respects_global_concurrency(store, dispatcher, provider):
    dispatcher.max_concurrency = 2
    for i in range(4):
        await store.enqueue(sample_payload(), owner_id=f"owner-{i}", row_id=f"row-{i}")

    result = await dispatcher.run_cycle()
    assert result.submitted == 2

    # Slots stay occupied while jobs are submitted/running
    result = await dispatcher.run_cycle()
    assert result.claimed == 0
    assert len(provider.submissions) == 2


@pytest.mark.asyncio
async def test_provider_failure_is_recorded(store, dispatcher, provider):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await dispatcher.run_cycle()

    provider.poll_script["p-1"] = [failed("NSFW content detected")]
    poll = await dispatcher.poll_active()

    assert poll.failed == 1
    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.failure_kind == FailureKind.PROVIDER_FAILED
    assert job.error == "NSFW content detected"
    # Request id is kept for jobs failed after submission
    assert job.provider_request_id == "p-1"


@pytest.mark.asyncio
async def test_poll_errors_leave_job_untouched(store, dispatcher, provider):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await dispatcher.run_cycle()

    provider.poll_script["p-1"] = [ProviderUnavailable("502")]
    poll = await dispatcher.poll_active()
    assert poll.errors == 1

    provider.poll_script["p-1"] = [ProviderRecordNotFound("gone")]
    await dispatcher.poll_active()

    job = await store.get(job.id)
    assert job.status == JobStatus.SUBMITTED


@pytest.mark.asyncio
async def test_transient_storage_error_keeps_saving_lease(
    store, dispatcher, provider, storage, session_factory
):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await dispatcher.run_cycle()
    provider.poll_script["p-1"] = [succeeded("https://cdn.test/out.png")]
    storage.save_errors = [StorageUnavailable("storage down")]

    await dispatcher.poll_active()
    job = await store.get(job.id)
    assert job.status == JobStatus.SAVING
    assert job.persist_attempts == 1

    # Lease not expired yet: not polled again
    poll = await dispatcher.poll_active()
    assert poll.polled == 0

    await age_job(session_factory, job.id, seconds=300)
    poll = await dispatcher.poll_active()
    assert poll.succeeded == 1

    job = await store.get(job.id)
    assert job.status == JobStatus.SUCCEEDED
    assert job.output_paths == ["outputs/owner-1/out.png"]


@pytest.mark.asyncio
async def test_permanent_storage_error_fails_job(store, dispatcher, provider, storage):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await dispatcher.run_cycle()
    provider.poll_script["p-1"] = [succeeded("https://cdn.test/out.png")]
    storage.save_errors = [StorageObjectNotFound("output expired")]

    await dispatcher.poll_active()

    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error.startswith("Failed to persist outputs")


@pytest.mark.asyncio
async def test_success_without_outputs_fails_job(store, dispatcher, provider):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await dispatcher.run_cycle()
    provider.poll_script["p-1"] = [succeeded()]

    await dispatcher.poll_active()

    job = await store.get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.failure_kind == FailureKind.PROVIDER_FAILED
