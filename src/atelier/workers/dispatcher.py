"""Dispatcher: moves queued jobs to the provider and polled jobs to terminal states.

Every write goes through JobStore.transition() guarded on the status and row
version the dispatcher observed, so the dispatcher, the reconciliation loop and
other processes can all run cycles at the same time without double-submitting
or double-finalizing a job.

Cycle:
1. claim_next up to the free global capacity (per-owner cap applied in the claim)
2. submit claimed jobs concurrently
   - success: submitting -> submitted (provider_request_id recorded)
   - PermanentError (ProviderRejected, missing storage object): -> failed, never retried
   - TransientError (ProviderUnavailable, storage outage): attempts + 1 and back to
     queued with a backoff delay, or failed once attempts reaches max_attempts
3. poll submitted/running jobs (and saving jobs whose lease expired) and apply the
   translated provider state
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable

import structlog

from atelier.models.job import FailureKind, Job, JobStatus
from atelier.repositories.job import ClaimFilter
from atelier.services.backoff import BackoffPolicy
from atelier.services.exceptions import (
    ConflictError,
    PermanentError,
    ProviderRecordNotFound,
    TransientError,
)
from atelier.services.generation.base import GenerationProvider, ProviderState, ProviderStatus
from atelier.services.job_store import JobStore

logger = structlog.get_logger(__name__)


@dataclass
class DispatchResult:
    """Outcome counts of one claim-and-submit cycle."""

    claimed: int = 0
    submitted: int = 0
    requeued: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: int = 0
    job_ids: list[str] = field(default_factory=list)


@dataclass
class PollResult:
    """Outcome counts of one polling pass."""

    polled: int = 0
    advanced: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: int = 0


class Dispatcher:
    """Submits queued jobs under concurrency caps and tracks them to terminal states."""

    def __init__(
        self,
        store: JobStore,
        provider: GenerationProvider,
        storage,
        max_concurrency: int = 3,
        owner_max_concurrency: int | None = None,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        saving_lease_seconds: int = 120,
        poll_batch_size: int = 100,
        claim_scan_limit: int = 100,
    ):
        """Initialize dispatcher.

        Args:
            store: Job Store (the only mutation surface)
            provider: Generation provider client
            storage: Storage collaborator with async save_output(remote_url, owner_id)
            max_concurrency: Global cap on in-flight jobs
            owner_max_concurrency: Per-owner cap on in-flight jobs (None = no cap)
            max_attempts: Attempt budget before a retryable failure becomes terminal
            backoff: Delay policy for requeued jobs
            saving_lease_seconds: How long a saving job is left to its persisting worker
            poll_batch_size: Maximum jobs polled per pass
            claim_scan_limit: Maximum queued candidates inspected per claim
        """
        self.store = store
        self.provider = provider
        self.storage = storage
        self.max_concurrency = max_concurrency
        self.owner_max_concurrency = owner_max_concurrency
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy(base_seconds=15.0)
        self.saving_lease = timedelta(seconds=saving_lease_seconds)
        self.poll_batch_size = poll_batch_size
        self.claim_scan_limit = claim_scan_limit

    async def run_cycle(self) -> DispatchResult:
        """Claim eligible jobs up to free capacity and submit them concurrently.

        Idempotent: with nothing eligible it claims and submits nothing.
        """
        claimed = await self.store.claim_next(
            ClaimFilter(
                max_in_flight=self.max_concurrency,
                owner_max_in_flight=self.owner_max_concurrency,
            ),
            limit=self.max_concurrency,
            scan_limit=self.claim_scan_limit,
        )
        result = DispatchResult(claimed=len(claimed), job_ids=[str(job.id) for job in claimed])
        if not claimed:
            return result

        outcomes = await asyncio.gather(
            *(self.submit_job(job) for job in claimed), return_exceptions=True
        )

        for job, outcome in zip(claimed, outcomes):
            if isinstance(outcome, Exception):
                # Job stays submitting; stale claim recovery requeues it
                result.errors += 1
                logger.error(
                    "job.dispatch.error",
                    job_id=str(job.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome == "submitted":
                result.submitted += 1
            elif outcome == "requeued":
                result.requeued += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.conflicts += 1

        logger.info(
            "dispatch.cycle_completed",
            claimed=result.claimed,
            submitted=result.submitted,
            requeued=result.requeued,
            failed=result.failed,
        )
        return result

    async def submit_job(self, job: Job) -> str:
        """Submit one claimed (submitting) job and record the outcome.

        Returns:
            "submitted", "requeued", "failed" or "conflict"
        """
        start_time = time.time()
        attempt_number = job.attempts + 1
        logger.info("job.dispatch.started", job_id=str(job.id), attempt_number=attempt_number)

        try:
            provider_request_id = await self.provider.submit(job)

        except PermanentError as e:
            logger.error(
                "job.dispatch.rejected",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                attempt_number=attempt_number,
            )
            return await self._fail(job, {JobStatus.SUBMITTING}, str(e), FailureKind.REJECTED)

        except TransientError as e:
            logger.warning(
                "job.dispatch.retry",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                attempt_number=attempt_number,
            )
            return await self.requeue_or_fail(
                job, {JobStatus.SUBMITTING}, str(e), FailureKind.UNAVAILABLE
            )

        try:
            await self.store.transition(
                job.id,
                {JobStatus.SUBMITTING},
                JobStatus.SUBMITTED,
                expected_version=job.version,
                provider_request_id=provider_request_id,
                provider=self.provider.name,
                next_attempt_at=None,
            )
        except ConflictError:
            # Claim was recovered while the submission was in flight
            logger.warning(
                "job.dispatch.conflict",
                job_id=str(job.id),
                provider_request_id=provider_request_id,
            )
            return "conflict"

        logger.info(
            "job.dispatch.submitted",
            job_id=str(job.id),
            provider_request_id=provider_request_id,
            duration_seconds=time.time() - start_time,
            attempt_number=attempt_number,
        )
        return "submitted"

    async def requeue_or_fail(
        self,
        job: Job,
        from_states: Iterable[JobStatus],
        reason: str,
        failure_kind: FailureKind,
    ) -> str:
        """Count a failed attempt: requeue with backoff, or fail once the budget is spent.

        Rule: attempts + 1 >= max_attempts -> failed, otherwise queued.

        Returns:
            "requeued", "failed" or "conflict"
        """
        attempts = job.attempts + 1
        try:
            if attempts >= self.max_attempts:
                await self.store.transition(
                    job.id,
                    from_states,
                    JobStatus.FAILED,
                    expected_version=job.version,
                    attempts=attempts,
                    error=reason,
                    failure_kind=failure_kind,
                )
                logger.error(
                    "job.attempts_exhausted",
                    job_id=str(job.id),
                    attempts=attempts,
                    error_message=reason,
                )
                return "failed"

            next_attempt_at = self.backoff.next_attempt_at(attempts)
            await self.store.transition(
                job.id,
                from_states,
                JobStatus.QUEUED,
                expected_version=job.version,
                attempts=attempts,
                next_attempt_at=next_attempt_at,
            )
        except ConflictError:
            logger.debug("job.requeue.conflict", job_id=str(job.id))
            return "conflict"

        logger.info(
            "job.requeued",
            job_id=str(job.id),
            attempts=attempts,
            next_attempt_at=next_attempt_at.isoformat(),
            reason=reason,
        )
        return "requeued"

    async def _fail(
        self,
        job: Job,
        from_states: Iterable[JobStatus],
        error: str,
        failure_kind: FailureKind,
    ) -> str:
        try:
            await self.store.transition(
                job.id,
                from_states,
                JobStatus.FAILED,
                expected_version=job.version,
                error=error,
                failure_kind=failure_kind,
            )
        except ConflictError:
            logger.debug("job.fail.conflict", job_id=str(job.id))
            return "conflict"
        logger.error(
            "job.failed",
            job_id=str(job.id),
            failure_kind=failure_kind.value,
            error_message=error,
        )
        return "failed"

    async def poll_active(self) -> PollResult:
        """Poll provider status for submitted/running jobs and expired saving leases."""
        jobs = await self.store.list_pollable(self.saving_lease, limit=self.poll_batch_size)
        result = PollResult(polled=len(jobs))
        if not jobs:
            return result

        outcomes = await asyncio.gather(*(self.poll_job(job) for job in jobs), return_exceptions=True)
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                result.errors += 1
                logger.error(
                    "job.poll.error",
                    job_id=str(job.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome == "succeeded":
                result.succeeded += 1
            elif outcome == "failed":
                result.failed += 1
            elif outcome in ("running", "saving"):
                result.advanced += 1
            elif outcome == "error":
                result.errors += 1
        return result

    async def poll_job(self, job: Job) -> str:
        """Poll one job and apply the result.

        A missing provider record is left for the reconciliation loop (T1 / T2).
        """
        assert job.provider_request_id is not None
        try:
            state = await self.provider.poll_status(job.provider_request_id)
        except ProviderRecordNotFound:
            logger.warning(
                "job.poll.no_record",
                job_id=str(job.id),
                provider_request_id=job.provider_request_id,
            )
            return "missing"
        except TransientError as e:
            logger.warning(
                "job.poll.retry",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return "error"
        return await self.apply_provider_state(job, state)

    async def apply_provider_state(self, job: Job, state: ProviderState) -> str:
        """Advance a job according to a translated provider state.

        Returns:
            "running", "saving", "succeeded", "failed", "unchanged" or "conflict"
        """
        try:
            if state.status == ProviderStatus.RUNNING:
                if job.status != JobStatus.SUBMITTED:
                    return "unchanged"
                await self.store.transition(
                    job.id, {JobStatus.SUBMITTED}, JobStatus.RUNNING, expected_version=job.version
                )
                logger.info("job.running", job_id=str(job.id))
                return "running"

            if state.status == ProviderStatus.SAVING:
                if job.status not in (JobStatus.SUBMITTED, JobStatus.RUNNING):
                    return "unchanged"
                await self.store.transition(
                    job.id,
                    {JobStatus.SUBMITTED, JobStatus.RUNNING},
                    JobStatus.SAVING,
                    expected_version=job.version,
                )
                logger.info("job.saving", job_id=str(job.id))
                return "saving"

        except ConflictError:
            logger.debug("job.poll.conflict", job_id=str(job.id))
            return "conflict"

        if state.status == ProviderStatus.FAILED:
            return await self._fail(
                job,
                {JobStatus.SUBMITTED, JobStatus.RUNNING, JobStatus.SAVING},
                state.reason or "Provider reported failure",
                FailureKind.PROVIDER_FAILED,
            )

        return await self.finalize_success(job, state.outputs)

    async def finalize_success(self, job: Job, outputs: Iterable[str]) -> str:
        """Persist provider outputs through storage and mark the job succeeded.

        Takes the saving lease first (version-guarded), so only one worker persists
        a given job at a time. A transient storage failure leaves the job in saving;
        the next poll after the lease expires retries, up to max_attempts.

        Returns:
            "succeeded", "failed", "saving" or "conflict"
        """
        outputs = list(outputs)
        active_states = {JobStatus.SUBMITTED, JobStatus.RUNNING, JobStatus.SAVING}
        if not outputs:
            return await self._fail(
                job, active_states, "Provider reported success without outputs",
                FailureKind.PROVIDER_FAILED,
            )

        persist_attempts = job.persist_attempts + 1
        if persist_attempts > self.max_attempts:
            return await self._fail(
                job,
                active_states,
                f"Failed to persist outputs after {job.persist_attempts} attempts",
                FailureKind.PROVIDER_FAILED,
            )

        try:
            leased = await self.store.transition(
                job.id,
                active_states,
                JobStatus.SAVING,
                expected_version=job.version,
                persist_attempts=persist_attempts,
            )
        except ConflictError:
            logger.debug("job.saving.conflict", job_id=str(job.id))
            return "conflict"

        try:
            output_paths = [await self.storage.save_output(url, job.owner_id) for url in outputs]
        except TransientError as e:
            logger.warning(
                "job.outputs.retry",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                persist_attempts=persist_attempts,
            )
            return "saving"
        except PermanentError as e:
            return await self._fail(
                leased,
                {JobStatus.SAVING},
                f"Failed to persist outputs: {e}",
                FailureKind.PROVIDER_FAILED,
            )

        try:
            await self.store.transition(
                job.id,
                {JobStatus.SAVING},
                JobStatus.SUCCEEDED,
                expected_version=leased.version,
                output_paths=output_paths,
            )
        except ConflictError:
            logger.warning("job.succeeded.conflict", job_id=str(job.id))
            return "conflict"

        logger.info(
            "job.succeeded",
            job_id=str(job.id),
            provider_request_id=job.provider_request_id,
            output_count=len(output_paths),
        )
        return "succeeded"
