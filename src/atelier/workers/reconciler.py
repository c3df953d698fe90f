"""Reconciliation loop: periodic sweep that recovers jobs stuck in non-terminal states.

Each sweep:
1. Requeues stale claims (submitting past the claim timeout, e.g. dispatcher crash)
2. Re-polls submitted jobs older than T1; a provider with no record of the request
   sends the job back to queued (attempts + 1), failed once attempts reach max_attempts;
   a job the provider keeps failing to answer for is timed out after T1 + T2
3. Re-polls running/saving jobs older than T2; anything short of a final provider
   answer fails the job with a timeout reason
4. Retries or fails prompt jobs stuck in generating, expires stale pending ones
5. Re-invokes the dispatcher (claim-and-submit, then poll) for anything left behind

All moves go through the guarded JobStore.transition(), so a sweep racing the
dispatcher or another sweep can only lose with a ConflictError, never double-move.
"""

import time
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from atelier.core.timezone import utc_now
from atelier.models.job import FailureKind, Job, JobStatus, PromptStatus
from atelier.services.exceptions import (
    ConflictError,
    ProviderRecordNotFound,
    ProviderTimeout,
    TransientError,
)
from atelier.services.generation.base import GenerationProvider, ProviderStatus
from atelier.services.job_store import JobStore
from atelier.workers.dispatcher import Dispatcher

logger = structlog.get_logger(__name__)

# Failure kinds the admin reset may move back to queued
RESETTABLE_FAILURE_KINDS = (FailureKind.TIMEOUT, FailureKind.UNAVAILABLE)


@dataclass
class ReconcileResult:
    """Outcome counts of one sweep."""

    stale_claims_requeued: int = 0
    submissions_requeued: int = 0
    submissions_advanced: int = 0
    timed_out: int = 0
    finalized: int = 0
    failed: int = 0
    prompt_jobs_retried: int = 0
    prompt_jobs_failed: int = 0
    dispatched: int = 0
    polled: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ResetResult:
    """Outcome of an admin reset."""

    reset_count: int = 0
    skipped_count: int = 0
    prompt_jobs_reset: int = 0
    job_ids: list[str] = field(default_factory=list)
    dry_run: bool = False


class Reconciler:
    """Detects and recovers jobs that did not reach a terminal state in time."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        provider: GenerationProvider,
        claim_timeout_seconds: int = 120,
        submitted_timeout_seconds: int = 600,
        running_timeout_seconds: int = 3600,
        prompt_generating_timeout_seconds: int = 1800,
        prompt_pending_max_age_seconds: int = 86400,
        batch_size: int = 100,
    ):
        """Initialize reconciler.

        Args:
            store: Job Store
            dispatcher: Dispatcher whose entry points the sweep re-invokes
            provider: Generation provider used for re-polling
            claim_timeout_seconds: Age after which a submitting claim is stale
            submitted_timeout_seconds: T1, window for submitted -> running
            running_timeout_seconds: T2, window for running/saving -> terminal
            prompt_generating_timeout_seconds: Age after which a generating prompt job is stuck
            prompt_pending_max_age_seconds: Age after which a pending prompt request expires
            batch_size: Maximum jobs examined per step
        """
        self.store = store
        self.dispatcher = dispatcher
        self.provider = provider
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.submitted_timeout = timedelta(seconds=submitted_timeout_seconds)
        self.running_timeout = timedelta(seconds=running_timeout_seconds)
        self.prompt_generating_timeout = timedelta(seconds=prompt_generating_timeout_seconds)
        self.prompt_pending_max_age = timedelta(seconds=prompt_pending_max_age_seconds)
        self.batch_size = batch_size

    async def sweep(self) -> ReconcileResult:
        """Run one reconciliation pass.

        A failing step is logged and recorded in the result; the remaining steps
        still run.
        """
        start_time = time.time()
        result = ReconcileResult()

        steps = (
            ("stale_claims", self._sweep_stale_claims),
            ("stuck_submissions", self._sweep_stuck_submissions),
            ("running_timeouts", self._sweep_running),
            ("prompt_jobs", self._sweep_prompt_jobs),
            ("dispatch", self._sweep_dispatch),
        )
        for name, step in steps:
            try:
                await step(result)
            except Exception as e:
                logger.error(
                    "reconcile.step_failed",
                    step=name,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                result.errors.append(f"{name}: {e}")

        logger.info(
            "reconcile.completed",
            duration_seconds=time.time() - start_time,
            stale_claims_requeued=result.stale_claims_requeued,
            submissions_requeued=result.submissions_requeued,
            timed_out=result.timed_out,
            finalized=result.finalized,
            failed=result.failed,
            prompt_jobs_retried=result.prompt_jobs_retried,
            prompt_jobs_failed=result.prompt_jobs_failed,
            dispatched=result.dispatched,
            errors=len(result.errors),
        )
        return result

    async def _sweep_stale_claims(self, result: ReconcileResult) -> None:
        result.stale_claims_requeued += await self.recover_stale_claims()

    async def _sweep_stuck_submissions(self, result: ReconcileResult) -> None:
        jobs = await self.store.find_stuck(
            {JobStatus.SUBMITTED}, self.submitted_timeout, limit=self.batch_size
        )
        for job in jobs:
            outcome = await self.recover_stuck_submission(job)
            if outcome == "requeued":
                result.submissions_requeued += 1
            elif outcome == "failed":
                result.failed += 1
            elif outcome in ("running", "saving", "succeeded"):
                result.submissions_advanced += 1
            elif outcome == "timed_out":
                result.timed_out += 1

    async def _sweep_running(self, result: ReconcileResult) -> None:
        jobs = await self.store.find_stuck(
            {JobStatus.RUNNING, JobStatus.SAVING}, self.running_timeout, limit=self.batch_size
        )
        for job in jobs:
            outcome = await self.expire_running_job(job)
            if outcome == "timed_out":
                result.timed_out += 1
            elif outcome == "succeeded":
                result.finalized += 1
            elif outcome == "failed":
                result.failed += 1

    async def _sweep_prompt_jobs(self, result: ReconcileResult) -> None:
        retried, failed = await self.recover_prompt_jobs()
        result.prompt_jobs_retried += retried
        result.prompt_jobs_failed += failed

    async def _sweep_dispatch(self, result: ReconcileResult) -> None:
        dispatch = await self.dispatcher.run_cycle()
        result.dispatched += dispatch.submitted
        poll = await self.dispatcher.poll_active()
        result.polled += poll.polled

    async def recover_stale_claims(self) -> int:
        """Requeue jobs left in submitting past the claim timeout.

        A submitting job older than the timeout belongs to a dispatcher that crashed
        or hung mid-submission. The attempt is counted.

        Returns:
            Number of jobs requeued or failed
        """
        jobs = await self.store.find_stuck(
            {JobStatus.SUBMITTING}, self.claim_timeout, limit=self.batch_size
        )
        recovered = 0
        for job in jobs:
            outcome = await self.dispatcher.requeue_or_fail(
                job,
                {JobStatus.SUBMITTING},
                "Claim expired before submission completed",
                FailureKind.UNAVAILABLE,
            )
            if outcome != "conflict":
                recovered += 1

        if recovered:
            logger.info("reconcile.stale_claims_recovered", count=recovered)
        return recovered

    async def recover_stuck_submission(self, job: Job) -> str:
        """Poll a submitted job that never progressed within T1.

        Returns:
            "requeued" or "failed" when the provider has no record of the request,
            the applied provider state otherwise, "skipped" on a transient poll error,
            "timed_out" once the job has been submitted for longer than T1 + T2
        """
        assert job.provider_request_id is not None
        try:
            state = await self.provider.poll_status(job.provider_request_id)
        except ProviderRecordNotFound:
            logger.warning(
                "reconcile.submission_lost",
                job_id=str(job.id),
                provider_request_id=job.provider_request_id,
                attempts=job.attempts,
            )
            return await self.dispatcher.requeue_or_fail(
                job,
                {JobStatus.SUBMITTED},
                f"Provider has no record of request {job.provider_request_id}",
                FailureKind.TIMEOUT,
            )
        except TransientError as e:
            logger.warning(
                "reconcile.poll_failed",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
            )
            deadline = self.submitted_timeout + self.running_timeout
            if utc_now() - job.updated_at < deadline:
                return "skipped"
            return await self._time_out(job, {JobStatus.SUBMITTED}, deadline)

        return await self.dispatcher.apply_provider_state(job, state)

    async def expire_running_job(self, job: Job) -> str:
        """Resolve a running/saving job older than T2.

        Only a final provider answer (succeeded or failed) is applied; anything else,
        including an unreachable provider or a lost record, fails the job with a
        timeout reason.

        Returns:
            "succeeded", "failed", "timed_out", "saving" or "conflict"
        """
        state = None
        try:
            state = await self.provider.poll_status(job.provider_request_id or "")
        except (ProviderRecordNotFound, TransientError) as e:
            logger.warning(
                "reconcile.final_poll_failed",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error_message=str(e),
            )

        if state is not None and state.status == ProviderStatus.SUCCEEDED:
            return await self.dispatcher.finalize_success(job, state.outputs)
        if state is not None and state.status == ProviderStatus.FAILED:
            return await self.dispatcher.apply_provider_state(job, state)

        return await self._time_out(
            job, {JobStatus.RUNNING, JobStatus.SAVING}, self.running_timeout
        )

    async def _time_out(self, job: Job, states: set[JobStatus], window: timedelta) -> str:
        timeout = ProviderTimeout(
            f"Job exceeded {int(window.total_seconds())}s in {job.status.value}"
        )
        try:
            await self.store.transition(
                job.id,
                states,
                JobStatus.FAILED,
                expected_version=job.version,
                error=str(timeout),
                failure_kind=FailureKind.TIMEOUT,
            )
        except ConflictError:
            logger.debug("reconcile.timeout_conflict", job_id=str(job.id))
            return "conflict"

        logger.error(
            "job.timed_out",
            job_id=str(job.id),
            status=job.status.value,
            provider_request_id=job.provider_request_id,
        )
        return "timed_out"

    async def recover_prompt_jobs(self) -> tuple[int, int]:
        """Retry or fail prompt jobs stuck in generating, expire old pending ones.

        Returns:
            (retried, failed) counts
        """
        retried = 0
        failed = 0

        stuck = await self.store.find_stuck_prompt_jobs(
            {PromptStatus.GENERATING}, self.prompt_generating_timeout
        )
        for prompt_job in stuck:
            try:
                if prompt_job.retry_count + 1 < prompt_job.max_retries:
                    await self.store.retry_prompt_job(
                        prompt_job, "Prompt generation timed out", utc_now()
                    )
                    retried += 1
                else:
                    await self.store.fail_prompt_job(prompt_job, "Prompt generation timed out")
                    failed += 1
            except ConflictError:
                logger.debug("reconcile.prompt_conflict", prompt_job_id=str(prompt_job.id))

        expired = await self.store.find_expired_prompt_jobs(self.prompt_pending_max_age)
        for prompt_job in expired:
            try:
                await self.store.fail_prompt_job(prompt_job, "Prompt request expired")
                failed += 1
            except ConflictError:
                logger.debug("reconcile.prompt_conflict", prompt_job_id=str(prompt_job.id))

        if retried or failed:
            logger.info("reconcile.prompt_jobs_recovered", retried=retried, failed=failed)
        return retried, failed

    async def reset_stuck(self, owner_id: str | None = None, dry_run: bool = False) -> ResetResult:
        """Force stuck jobs back to queued with a fresh attempt budget.

        Candidates are jobs failed by a timeout or an unavailable provider, and
        in-flight jobs past their progress window. Jobs failed by an explicit
        rejection are never reset. Each move is a guarded transition at the version
        read here, so a job that completed concurrently is skipped.

        Args:
            owner_id: Restrict the reset to one owner (None = all owners)
            dry_run: Report candidates without writing

        Returns:
            ResetResult with counts and the affected job ids
        """
        candidates: list[Job] = []
        candidates.extend(await self.store.list_failed(RESETTABLE_FAILURE_KINDS, owner_id))
        windows = (
            ({JobStatus.SUBMITTING}, self.claim_timeout),
            ({JobStatus.SUBMITTED}, self.submitted_timeout),
            ({JobStatus.RUNNING, JobStatus.SAVING}, self.running_timeout),
        )
        for states, older_than in windows:
            candidates.extend(await self.store.find_stuck(states, older_than, owner_id=owner_id))

        stuck_prompts = [
            prompt_job
            for prompt_job in await self.store.find_stuck_prompt_jobs(
                {PromptStatus.GENERATING}, self.prompt_generating_timeout
            )
            if owner_id is None or prompt_job.owner_id == owner_id
        ]

        result = ResetResult(dry_run=dry_run)
        if dry_run:
            result.reset_count = len(candidates)
            result.prompt_jobs_reset = len(stuck_prompts)
            result.job_ids = [str(job.id) for job in candidates]
            logger.info(
                "reset.dry_run",
                owner_id=owner_id,
                candidates=len(candidates),
                prompt_jobs=len(stuck_prompts),
            )
            return result

        for job in candidates:
            try:
                await self.store.transition(
                    job.id,
                    {job.status},
                    JobStatus.QUEUED,
                    expected_version=job.version,
                    attempts=0,
                    next_attempt_at=None,
                )
            except ConflictError:
                result.skipped_count += 1
                continue
            result.reset_count += 1
            result.job_ids.append(str(job.id))

        for prompt_job in stuck_prompts:
            try:
                await self.store.reset_prompt_job(prompt_job)
            except ConflictError:
                continue
            result.prompt_jobs_reset += 1

        logger.info(
            "reset.completed",
            owner_id=owner_id,
            reset=result.reset_count,
            skipped=result.skipped_count,
            prompt_jobs_reset=result.prompt_jobs_reset,
        )
        return result
