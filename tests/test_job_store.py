"""Job Store tests.

Tests focus on the store's contract:
- enqueue validation (payload references, grouping ids, prompt requirements)
- claim_next atomicity under concurrent claimers
- FIFO queue position
- Global and per-owner concurrency caps, prompt and backoff eligibility
"""

import asyncio
from datetime import timedelta

import pytest
from fakes import age_job, sample_payload

from atelier.core.timezone import utc_now
from atelier.models.job import FailureKind, JobStatus, PromptStatus
from atelier.models.prompt_job import PromptOperation
from atelier.repositories.job import ClaimFilter
from atelier.services.exceptions import JobNotFoundError, ValidationError
from atelier.services.payload import PromptRequest


@pytest.mark.asyncio
async def test_enqueue_creates_queued_job_with_canonical_payload(store):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    assert job.status == JobStatus.QUEUED
    assert job.provider_request_id is None
    assert job.prompt_status is None
    assert job.attempts == 0
    assert job.request_payload["ref_paths"] == ["a.png"]
    assert job.request_payload["target_path"] == "b.png"
    assert job.request_payload["prompt"] == "x"
    assert job.request_payload["width"] == 4096


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"ref": ["a.png"], "prompt": "x"},
        {"ref": ["../secret.png"], "target": "b.png", "prompt": "x"},
        {"ref": ["https://example.com/a.png"], "target": "b.png", "prompt": "x"},
        {"target": "/abs/b.png", "prompt": "x"},
        {"target": "b.png", "prompt": "x", "width": 512},
    ],
)
async def test_enqueue_rejects_malformed_payload(store, payload):
    with pytest.raises(ValidationError):
        await store.enqueue(payload, owner_id="owner-1", row_id="row-1")


@pytest.mark.asyncio
async def test_enqueue_requires_exactly_one_grouping_reference(store):
    with pytest.raises(ValidationError, match="Exactly one"):
        await store.enqueue(sample_payload(), owner_id="owner-1")

    with pytest.raises(ValidationError, match="Exactly one"):
        await store.enqueue(
            sample_payload(), owner_id="owner-1", row_id="row-1", variant_row_id="variant-1"
        )

    job = await store.enqueue(sample_payload(), owner_id="owner-1", variant_row_id="variant-1")
    assert job.variant_row_id == "variant-1"
    assert job.row_id is None


@pytest.mark.asyncio
async def test_enqueue_without_prompt_requires_prompt_request(store):
    with pytest.raises(ValidationError, match="Invalid prompt"):
        await store.enqueue(sample_payload(prompt=None), owner_id="owner-1", row_id="row-1")

    job = await store.enqueue(
        sample_payload(prompt=None),
        owner_id="owner-1",
        row_id="row-1",
        prompt_request=PromptRequest(),
    )
    assert job.prompt_status == PromptStatus.PENDING
    assert job.prompt_job_id is not None

    prompt_job = await store.get_prompt_job(job.prompt_job_id)
    assert prompt_job is not None
    assert prompt_job.job_id == job.id
    assert prompt_job.operation == PromptOperation.GENERATE
    assert prompt_job.priority == 5
    assert prompt_job.target_path == "b.png"


@pytest.mark.asyncio
async def test_enhance_request_needs_existing_prompt_and_gets_higher_priority(store):
    with pytest.raises(ValidationError):
        await store.enqueue(
            sample_payload(prompt=None),
            owner_id="owner-1",
            row_id="row-1",
            prompt_request=PromptRequest(operation=PromptOperation.ENHANCE),
        )

    job = await store.enqueue(
        sample_payload(prompt="a cat"),
        owner_id="owner-1",
        row_id="row-1",
        prompt_request=PromptRequest(operation=PromptOperation.ENHANCE, instructions="more blue"),
    )
    prompt_job = await store.get_prompt_job(job.prompt_job_id)
    assert prompt_job.priority == 8
    assert prompt_job.existing_prompt == "a cat"
    assert prompt_job.instructions == "more blue"


@pytest.mark.asyncio
async def test_get_unknown_job_raises_not_found(store):
    from uuid import uuid4

    with pytest.raises(JobNotFoundError):
        await store.get(uuid4())


@pytest.mark.asyncio
async def test_concurrent_claimers_never_return_the_same_job(store):
    """N parallel claimers over M queued jobs: Σ claimed = M, no duplicates."""
    total_jobs = 12
    for i in range(total_jobs):
        await store.enqueue(sample_payload(), owner_id=f"owner-{i % 3}", row_id=f"row-{i}")

    results = await asyncio.gather(
        *(store.claim_next(ClaimFilter(), limit=total_jobs) for _ in range(5))
    )

    claimed_ids = [str(job.id) for jobs in results for job in jobs]
    assert len(claimed_ids) == total_jobs
    assert len(set(claimed_ids)) == total_jobs

    counts = await store.status_counts()
    assert counts[JobStatus.SUBMITTING] == total_jobs
    assert counts[JobStatus.QUEUED] == 0


@pytest.mark.asyncio
async def test_queue_position_of_new_job_equals_existing_queued_count(store):
    existing = 4
    for i in range(existing):
        await store.enqueue(sample_payload(), owner_id="owner-1", row_id=f"row-{i}")
    # Other owners' jobs do not count
    await store.enqueue(sample_payload(), owner_id="owner-2", row_id="row-x")

    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-new")
    snapshot = await store.snapshot(job.id)

    assert snapshot.queue_position == existing


@pytest.mark.asyncio
async def test_claim_is_fifo_within_owner(store):
    first = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    second = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-2")

    claimed = await store.claim_next(ClaimFilter(), limit=1)

    assert [job.id for job in claimed] == [first.id]
    snapshot = await store.snapshot(second.id)
    assert snapshot.queue_position == 0


@pytest.mark.asyncio
async def test_claim_respects_global_cap(store):
    for i in range(5):
        await store.enqueue(sample_payload(), owner_id=f"owner-{i}", row_id=f"row-{i}")

    claimed = await store.claim_next(ClaimFilter(max_in_flight=2), limit=5)
    assert len(claimed) == 2

    # Cap is counted against jobs already in flight
    assert await store.claim_next(ClaimFilter(max_in_flight=2), limit=5) == []
    assert await store.count_in_flight() == 2


@pytest.mark.asyncio
async def test_claim_respects_owner_cap_and_skips_to_other_owners(store):
    for i in range(3):
        await store.enqueue(sample_payload(), owner_id="busy-owner", row_id=f"busy-{i}")
    other = await store.enqueue(sample_payload(), owner_id="other-owner", row_id="other-1")

    claimed = await store.claim_next(ClaimFilter(owner_max_in_flight=1), limit=10)

    owners = sorted(job.owner_id for job in claimed)
    assert owners == ["busy-owner", "other-owner"]
    assert other.id in {job.id for job in claimed}


@pytest.mark.asyncio
async def test_capped_owner_backlog_does_not_hide_other_owners(store):
    for i in range(6):
        await store.enqueue(sample_payload(), owner_id="busy-owner", row_id=f"busy-{i}")
    claim_filter = ClaimFilter(max_in_flight=10, owner_max_in_flight=1)

    first = await store.claim_next(claim_filter, limit=10, scan_limit=5)
    assert [job.owner_id for job in first] == ["busy-owner"]

    other = await store.enqueue(sample_payload(), owner_id="other-owner", row_id="other-1")
    second = await store.claim_next(claim_filter, limit=10, scan_limit=5)

    assert [job.id for job in second] == [other.id]
    assert (await store.get(other.id)).status == JobStatus.SUBMITTING


@pytest.mark.asyncio
async def test_claim_skips_unresolved_prompt_and_pending_backoff(store):
    await store.enqueue(
        sample_payload(prompt=None),
        owner_id="owner-1",
        row_id="row-1",
        prompt_request=PromptRequest(),
    )
    delayed = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-2")
    ready = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-3")

    # Delay the second job through a claim + requeue with a future next_attempt_at
    await store.transition(delayed.id, {JobStatus.QUEUED}, JobStatus.SUBMITTING)
    await store.transition(
        delayed.id,
        {JobStatus.SUBMITTING},
        JobStatus.QUEUED,
        attempts=1,
        next_attempt_at=utc_now() + timedelta(minutes=5),
    )

    claimed = await store.claim_next(ClaimFilter(), limit=10)

    assert [job.id for job in claimed] == [ready.id]


@pytest.mark.asyncio
async def test_list_active_excludes_terminal_jobs_and_other_owners(store):
    active = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    done = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-2")
    await store.enqueue(sample_payload(), owner_id="owner-2", row_id="row-3")
    await store.transition(
        done.id,
        {JobStatus.QUEUED},
        JobStatus.FAILED,
        error="rejected",
        failure_kind=FailureKind.REJECTED,
    )

    jobs = await store.list_active("owner-1")

    assert [job.id for job in jobs] == [active.id]


@pytest.mark.asyncio
async def test_find_stuck_uses_updated_at_cutoff(store, session_factory):
    fresh = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    stale = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-2")
    for job in (fresh, stale):
        await store.transition(job.id, {JobStatus.QUEUED}, JobStatus.SUBMITTING)
    await age_job(session_factory, stale.id, seconds=300)

    stuck = await store.find_stuck({JobStatus.SUBMITTING}, timedelta(seconds=120))

    assert [job.id for job in stuck] == [stale.id]


@pytest.mark.asyncio
async def test_status_counts_include_empty_statuses(store):
    await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    counts = await store.status_counts()

    assert counts[JobStatus.QUEUED] == 1
    assert counts[JobStatus.SUCCEEDED] == 0
    assert set(counts) == set(JobStatus)
