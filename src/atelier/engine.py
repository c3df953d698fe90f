"""Dispatch engine: the process-wide component that owns the background loops.

Wires the Job Store, provider clients, dispatcher, reconciler and prompt queue
together and gives them an explicit start/stop lifecycle. The FastAPI lifespan
and the CLI commands build one with build_engine(); tests construct isolated
instances with fake collaborators.
"""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atelier.core.config import Settings
from atelier.models.job import Job
from atelier.services.backoff import BackoffPolicy
from atelier.services.generation.base import GenerationProvider
from atelier.services.generation.replicate_client import ReplicateProvider
from atelier.services.generation.wavespeed_client import WaveSpeedProvider
from atelier.services.job_store import JobStore
from atelier.services.payload import PromptRequest
from atelier.services.prompting.grok_client import GrokPromptProvider
from atelier.services.status import StatusService
from atelier.services.storage.supabase_storage import SupabaseStorage
from atelier.uow import create_uow_factory
from atelier.workers.dispatcher import Dispatcher, DispatchResult
from atelier.workers.prompt_queue import PromptQueue
from atelier.workers.reconciler import Reconciler, ReconcileResult, ResetResult

logger = structlog.get_logger(__name__)

RESTART_DELAY = 1  # Fixed 1 second delay between worker restarts
ERROR_BACKOFF = 5  # Seconds to wait after an unexpected loop error


class Engine:
    """Owns the dispatch, prompt and reconcile loops and the eager triggers."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        reconciler: Reconciler,
        prompt_queue: PromptQueue,
        status: StatusService | None = None,
        dispatch_interval_seconds: float = 5.0,
        prompt_interval_seconds: float = 5.0,
        reconcile_interval_seconds: float = 60.0,
        reconcile_in_process: bool = True,
    ):
        """Initialize engine.

        Args:
            store: Job Store
            dispatcher: Dispatcher
            reconciler: Reconciliation loop
            prompt_queue: Prompt sub-queue worker
            status: Status projection (built from store when omitted)
            dispatch_interval_seconds: Pause between dispatch/poll cycles
            prompt_interval_seconds: Pause between prompt batches
            reconcile_interval_seconds: Pause between reconciliation sweeps
            reconcile_in_process: Run the reconcile loop here (False when an external
                scheduler calls the cron endpoint instead)
        """
        self.store = store
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.prompt_queue = prompt_queue
        self.status = status or StatusService(store)
        self.dispatch_interval_seconds = dispatch_interval_seconds
        self.prompt_interval_seconds = prompt_interval_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.reconcile_in_process = reconcile_in_process

        self.shutdown_event = asyncio.Event()
        self.workers: dict[str, asyncio.Task] = {}
        self.triggers: set[asyncio.Task] = set()
        self.dispatch_lock = asyncio.Lock()
        self.prompt_lock = asyncio.Lock()

        # Completed prompts make their parents dispatch-eligible right away
        self.prompt_queue.on_prompt_ready = self.dispatch_once

    @property
    def running(self) -> bool:
        return bool(self.workers) and not self.shutdown_event.is_set()

    async def start(self) -> None:
        """Run startup recovery, then start the background loops."""
        self.shutdown_event.clear()

        try:
            recovered = await self.reconciler.recover_stale_claims()
            if recovered:
                logger.info("startup.recovery_completed", stale_claims=recovered)
        except Exception as e:
            # Loops still start; the reconcile sweep retries recovery
            logger.error(
                "startup.recovery_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

        self._start_worker("dispatch", self._dispatch_loop)
        self._start_worker("prompt", self._prompt_loop)
        if self.reconcile_in_process:
            self._start_worker("reconcile", self._reconcile_loop)

        logger.info(
            "engine.started",
            workers=sorted(self.workers),
            dispatch_interval=self.dispatch_interval_seconds,
            reconcile_in_process=self.reconcile_in_process,
        )

    async def stop(self) -> None:
        """Cancel the loops and wait for in-flight triggers to finish."""
        self.shutdown_event.set()

        tasks = list(self.workers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.workers.clear()

        if self.triggers:
            await asyncio.gather(*self.triggers, return_exceptions=True)
        logger.info("engine.stopped")

    def _start_worker(self, name: str, coro_func: Callable[[], Awaitable[None]]) -> None:
        """Start a loop that is recreated automatically if it crashes."""

        def on_worker_done(task: asyncio.Task) -> None:
            if self.shutdown_event.is_set():
                logger.info("worker.shutdown_complete", worker=name)
                return

            if task.cancelled():
                logger.info("worker.cancelled", worker=name)
                return

            exc = task.exception()
            if exc:
                logger.error(
                    "worker.crashed",
                    worker=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    retry_in_seconds=RESTART_DELAY,
                    exc_info=exc,
                )
            else:
                logger.warning(
                    "worker.stopped_unexpectedly",
                    worker=name,
                    retry_in_seconds=RESTART_DELAY,
                )

            async def restart_worker():
                await asyncio.sleep(RESTART_DELAY)
                if self.shutdown_event.is_set():
                    return
                logger.info("worker.restarting", worker=name)
                self._start_worker(name, coro_func)

            self._track(asyncio.create_task(restart_worker()))

        task = asyncio.create_task(coro_func())
        task.add_done_callback(on_worker_done)
        self.workers[name] = task

    async def _run_loop(
        self, name: str, step: Callable[[], Awaitable[Any]], interval: float
    ) -> None:
        logger.info("worker.started", worker=name, interval=interval)
        try:
            while True:
                try:
                    await step()
                    await asyncio.sleep(interval)

                except asyncio.CancelledError:
                    raise

                except Exception as e:
                    logger.error(
                        "worker.error",
                        worker=name,
                        error_type=type(e).__name__,
                        error_message=str(e),
                        exc_info=True,
                    )
                    await asyncio.sleep(ERROR_BACKOFF)

        except asyncio.CancelledError:
            logger.info("worker.stopped", worker=name)
            raise

    async def _dispatch_step(self) -> None:
        await self.dispatch_once()
        await self.dispatcher.poll_active()

    async def _dispatch_loop(self) -> None:
        await self._run_loop("dispatch", self._dispatch_step, self.dispatch_interval_seconds)

    async def _prompt_loop(self) -> None:
        await self._run_loop("prompt", self.process_prompts, self.prompt_interval_seconds)

    async def _reconcile_loop(self) -> None:
        await self._run_loop("reconcile", self.reconcile, self.reconcile_interval_seconds)

    async def dispatch_once(self) -> DispatchResult:
        """Run one claim-and-submit cycle (serialized within this process)."""
        async with self.dispatch_lock:
            return await self.dispatcher.run_cycle()

    async def process_prompts(self) -> int:
        """Process one prompt batch (serialized within this process)."""
        async with self.prompt_lock:
            return await self.prompt_queue.process_batch()

    async def reconcile(self) -> ReconcileResult:
        """Run one reconciliation sweep."""
        return await self.reconciler.sweep()

    async def reset_stuck(self, owner_id: str | None = None, dry_run: bool = False) -> ResetResult:
        """Admin reset of stuck jobs, followed by an eager dispatch."""
        result = await self.reconciler.reset_stuck(owner_id=owner_id, dry_run=dry_run)
        if result.reset_count and not dry_run:
            self.trigger_dispatch()
        if result.prompt_jobs_reset and not dry_run:
            self.trigger_prompts()
        return result

    async def enqueue(
        self,
        payload: dict[str, Any],
        owner_id: str,
        row_id: str | None = None,
        variant_row_id: str | None = None,
        prompt_request: PromptRequest | None = None,
    ) -> Job:
        """Create a job and eagerly trigger the next pipeline stage (fire-and-forget).

        Raises:
            ValidationError: If the request is malformed (the only error callers see)
        """
        job = await self.store.enqueue(
            payload,
            owner_id=owner_id,
            row_id=row_id,
            variant_row_id=variant_row_id,
            prompt_request=prompt_request,
        )
        if job.prompt_job_id is not None:
            self.trigger_prompts()
        else:
            self.trigger_dispatch()
        return job

    def trigger_dispatch(self) -> None:
        """Schedule one dispatch cycle without waiting for it."""
        self._track(asyncio.create_task(self.dispatch_once()), "dispatch")

    def trigger_prompts(self) -> None:
        """Schedule one prompt batch without waiting for it."""
        self._track(asyncio.create_task(self.process_prompts()), "prompt")

    def _track(self, task: asyncio.Task, trigger: str | None = None) -> None:
        self.triggers.add(task)

        def on_done(done: asyncio.Task) -> None:
            self.triggers.discard(done)
            if trigger is None or done.cancelled():
                return
            exc = done.exception()
            if exc:
                logger.error(
                    "trigger.failed",
                    trigger=trigger,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        task.add_done_callback(on_done)


def build_provider(settings: Settings, storage) -> GenerationProvider:
    """Create the generation provider selected by GENERATION_PROVIDER."""
    if settings.generation_provider == "replicate":
        return ReplicateProvider(
            storage,
            api_token=settings.replicate_api_token,
            model=settings.replicate_model,
            sign_expires_seconds=settings.signed_url_ttl_seconds,
            timeout=settings.provider_timeout_seconds,
        )
    return WaveSpeedProvider(
        storage,
        api_key=settings.wavespeed_api_key,
        base_url=settings.wavespeed_api_base,
        model_path=settings.wavespeed_model_path,
        sign_expires_seconds=settings.signed_url_ttl_seconds,
        timeout=settings.provider_timeout_seconds,
    )


def build_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: GenerationProvider | None = None,
    storage=None,
    prompt_provider=None,
) -> Engine:
    """Assemble an Engine from settings.

    Args:
        settings: Application settings
        session_factory: Database session factory from setup_db_session()
        provider: Generation provider override (default: from GENERATION_PROVIDER)
        storage: Storage collaborator override (default: SupabaseStorage)
        prompt_provider: Prompt provider override (default: GrokPromptProvider)

    Returns:
        Engine ready to start()
    """
    store = JobStore(
        create_uow_factory(session_factory), prompt_max_retries=settings.prompt_max_retries
    )

    if storage is None:
        storage = SupabaseStorage(
            settings.storage_url,
            settings.storage_service_key,
            inputs_bucket=settings.storage_inputs_bucket,
            outputs_bucket=settings.storage_outputs_bucket,
        )
    if provider is None:
        provider = build_provider(settings, storage)
    if prompt_provider is None:
        prompt_provider = GrokPromptProvider(
            settings.xai_api_key,
            base_url=settings.xai_api_base,
            models=settings.prompt_models_list,
            timeout=settings.prompt_timeout_seconds,
        )

    dispatcher = Dispatcher(
        store,
        provider,
        storage,
        max_concurrency=settings.dispatch_max_concurrency,
        owner_max_concurrency=settings.dispatch_owner_max_concurrency,
        max_attempts=settings.max_attempts,
        backoff=BackoffPolicy(
            base_seconds=settings.backoff_base_seconds,
            multiplier=settings.backoff_multiplier,
            max_seconds=settings.backoff_max_seconds,
        ),
        saving_lease_seconds=settings.saving_lease_seconds,
        poll_batch_size=settings.poll_batch_size,
        claim_scan_limit=settings.claim_scan_limit,
    )
    reconciler = Reconciler(
        store,
        dispatcher,
        provider,
        claim_timeout_seconds=settings.claim_timeout_seconds,
        submitted_timeout_seconds=settings.submitted_timeout_seconds,
        running_timeout_seconds=settings.running_timeout_seconds,
        prompt_generating_timeout_seconds=settings.prompt_generating_timeout_seconds,
        prompt_pending_max_age_seconds=settings.prompt_pending_max_age_seconds,
    )
    prompt_queue = PromptQueue(
        store,
        prompt_provider,
        storage,
        batch_size=settings.prompt_batch_size,
        max_concurrency=settings.prompt_max_concurrency,
        backoff=BackoffPolicy(
            base_seconds=settings.prompt_backoff_base_seconds,
            multiplier=settings.prompt_backoff_multiplier,
            max_seconds=settings.prompt_backoff_max_seconds,
        ),
        sign_expires_seconds=settings.signed_url_ttl_seconds,
    )

    return Engine(
        store,
        dispatcher,
        reconciler,
        prompt_queue,
        dispatch_interval_seconds=settings.dispatch_interval_seconds,
        prompt_interval_seconds=settings.prompt_interval_seconds,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
        reconcile_in_process=settings.reconcile_in_process,
    )
