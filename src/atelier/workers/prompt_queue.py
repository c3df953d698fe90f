"""Prompt sub-queue worker.

Claims pending prompt jobs (priority first, then FIFO), asks the prompt provider
for prompt text, and writes the result into the parent job, which makes the
parent dispatch-eligible. Bounded by a semaphore because the prompt provider is
rate limited and billed per call.

Outcomes per prompt job:
- success: generating -> completed, parent payload prompt set, parent prompt_status completed
- PermanentError: prompt job and parent job failed
- TransientError / invalid prompt text: back to pending with backoff while retries
  remain, otherwise failed like a permanent error
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from atelier.models.prompt_job import PromptJob
from atelier.services.backoff import BackoffPolicy
from atelier.services.exceptions import ConflictError, PermanentError, TransientError
from atelier.services.job_store import JobStore
from atelier.services.prompt_validator import validate_prompt

logger = structlog.get_logger(__name__)


class PromptQueue:
    """Worker pool for prompt enrichment."""

    def __init__(
        self,
        store: JobStore,
        prompt_provider,
        storage,
        batch_size: int = 3,
        max_concurrency: int = 3,
        backoff: BackoffPolicy | None = None,
        sign_expires_seconds: int = 600,
        on_prompt_ready: Callable[[], Awaitable[object]] | None = None,
    ):
        """Initialize prompt queue.

        Args:
            store: Job Store
            prompt_provider: Client with async generate(image_urls, operation, existing_prompt, instructions)
            storage: Storage collaborator with async sign_path(path, expires_in)
            batch_size: Maximum prompt jobs claimed per batch
            max_concurrency: Maximum simultaneous prompt provider calls
            backoff: Retry delay policy
            sign_expires_seconds: Lifetime of signed image URLs
            on_prompt_ready: Awaited after a batch that completed at least one prompt
        """
        self.store = store
        self.prompt_provider = prompt_provider
        self.storage = storage
        self.batch_size = batch_size
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.backoff = backoff or BackoffPolicy(base_seconds=1.0, multiplier=2.0, max_seconds=30.0)
        self.sign_expires_seconds = sign_expires_seconds
        self.on_prompt_ready = on_prompt_ready

    async def process_batch(self) -> int:
        """Claim and process one batch of pending prompt jobs.

        Returns:
            Number of prompt jobs claimed
        """
        prompt_jobs = await self.store.claim_prompt_jobs(self.batch_size)
        if not prompt_jobs:
            return 0

        results = await asyncio.gather(
            *(self._process_limited(prompt_job) for prompt_job in prompt_jobs),
            return_exceptions=True,
        )

        completed = 0
        for prompt_job, outcome in zip(prompt_jobs, results):
            if isinstance(outcome, Exception):
                # Left in generating; the reconciliation loop retries it after the timeout
                logger.error(
                    "prompt.process_error",
                    prompt_job_id=str(prompt_job.id),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome == "completed":
                completed += 1

        if completed and self.on_prompt_ready is not None:
            await self.on_prompt_ready()
        return len(prompt_jobs)

    async def process_until_empty(self, max_batches: int = 100) -> int:
        """Process batches until nothing is claimable.

        Returns:
            Total prompt jobs claimed
        """
        total = 0
        for _ in range(max_batches):
            claimed = await self.process_batch()
            if not claimed:
                break
            total += claimed
        return total

    async def _process_limited(self, prompt_job: PromptJob) -> str:
        async with self.semaphore:
            return await self.process_one(prompt_job)

    async def process_one(self, prompt_job: PromptJob) -> str:
        """Generate a prompt for one claimed (generating) prompt job.

        Returns:
            "completed", "retrying", "failed" or "conflict"
        """
        start_time = time.time()
        attempt_number = prompt_job.retry_count + 1
        logger.info(
            "prompt.generation.started",
            prompt_job_id=str(prompt_job.id),
            job_id=str(prompt_job.job_id),
            operation=prompt_job.operation.value,
            attempt_number=attempt_number,
        )

        try:
            paths = [*(prompt_job.ref_paths or []), prompt_job.target_path]
            image_urls = list(
                await asyncio.gather(
                    *(self.storage.sign_path(path, self.sign_expires_seconds) for path in paths)
                )
            )
            text = await self.prompt_provider.generate(
                image_urls,
                operation=prompt_job.operation,
                existing_prompt=prompt_job.existing_prompt,
                instructions=prompt_job.instructions,
            )
            prompt = validate_prompt(text)

        except PermanentError as e:
            logger.error(
                "prompt.generation.failed",
                prompt_job_id=str(prompt_job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                attempt_number=attempt_number,
            )
            return await self._fail(prompt_job, str(e))

        except (TransientError, ValueError) as e:
            if prompt_job.retry_count + 1 >= prompt_job.max_retries:
                logger.error(
                    "prompt.retries_exhausted",
                    prompt_job_id=str(prompt_job.id),
                    error_type=type(e).__name__,
                    error_message=str(e),
                    attempt_number=attempt_number,
                )
                return await self._fail(prompt_job, str(e))

            next_attempt_at = self.backoff.next_attempt_at(attempt_number)
            try:
                await self.store.retry_prompt_job(prompt_job, str(e), next_attempt_at)
            except ConflictError:
                return "conflict"
            logger.warning(
                "prompt.generation.retry",
                prompt_job_id=str(prompt_job.id),
                error_type=type(e).__name__,
                error_message=str(e),
                attempt_number=attempt_number,
                next_attempt_at=next_attempt_at.isoformat(),
            )
            return "retrying"

        try:
            await self.store.complete_prompt_job(prompt_job, prompt)
        except ConflictError as e:
            logger.warning(
                "prompt.completion_conflict",
                prompt_job_id=str(prompt_job.id),
                error_message=str(e),
            )
            return "conflict"

        logger.info(
            "prompt.generation.succeeded",
            prompt_job_id=str(prompt_job.id),
            job_id=str(prompt_job.job_id),
            duration_seconds=time.time() - start_time,
            attempt_number=attempt_number,
        )
        return "completed"

    async def _fail(self, prompt_job: PromptJob, error: str) -> str:
        try:
            await self.store.fail_prompt_job(prompt_job, error)
        except ConflictError:
            return "conflict"
        return "failed"
