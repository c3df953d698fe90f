"""Administrative and scheduler endpoints.

- POST /api/admin/reset-stuck - Force stuck jobs back to queued (ADMIN_SECRET bearer)
- POST /api/cron/reconcile - Run one reconciliation sweep (CRON_SECRET bearer)
- POST /api/cron/dispatch - Run one dispatch cycle and polling pass (CRON_SECRET bearer)
"""

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from atelier.api.dependencies import get_engine, require_admin, require_cron
from atelier.engine import Engine

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["admin"])


class ResetStuckRequest(BaseModel):
    """Request model for the admin reset."""

    owner_id: str | None = Field(default=None, description="Limit reset to one owner")
    dry_run: bool = Field(default=False, description="Report candidates without writing")


class ResetStuckResponse(BaseModel):
    reset_count: int
    skipped_count: int
    prompt_jobs_reset: int
    job_ids: list[str]
    dry_run: bool


class ReconcileResponse(BaseModel):
    stale_claims_requeued: int
    submissions_requeued: int
    submissions_advanced: int
    timed_out: int
    finalized: int
    failed: int
    prompt_jobs_retried: int
    prompt_jobs_failed: int
    dispatched: int
    polled: int
    errors: list[str]


class DispatchResponse(BaseModel):
    claimed: int
    submitted: int
    requeued: int
    failed: int
    polled: int
    succeeded: int


@router.post(
    "/admin/reset-stuck",
    response_model=ResetStuckResponse,
    dependencies=[Depends(require_admin)],
)
async def reset_stuck(
    request: ResetStuckRequest,
    engine: Engine = Depends(get_engine),
) -> ResetStuckResponse:
    """Reset jobs failed by timeout/unavailability and jobs stuck past their window.

    Jobs rejected by the provider, failed by the provider, or completed are never
    touched.
    """
    result = await engine.reset_stuck(owner_id=request.owner_id, dry_run=request.dry_run)
    logger.info(
        "admin.reset_stuck",
        owner_id=request.owner_id,
        dry_run=request.dry_run,
        reset=result.reset_count,
    )
    return ResetStuckResponse(
        reset_count=result.reset_count,
        skipped_count=result.skipped_count,
        prompt_jobs_reset=result.prompt_jobs_reset,
        job_ids=result.job_ids,
        dry_run=result.dry_run,
    )


@router.post(
    "/cron/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_cron)],
)
async def cron_reconcile(engine: Engine = Depends(get_engine)) -> ReconcileResponse:
    """Run one reconciliation sweep (durability backstop for missed triggers)."""
    result = await engine.reconcile()
    return ReconcileResponse(
        stale_claims_requeued=result.stale_claims_requeued,
        submissions_requeued=result.submissions_requeued,
        submissions_advanced=result.submissions_advanced,
        timed_out=result.timed_out,
        finalized=result.finalized,
        failed=result.failed,
        prompt_jobs_retried=result.prompt_jobs_retried,
        prompt_jobs_failed=result.prompt_jobs_failed,
        dispatched=result.dispatched,
        polled=result.polled,
        errors=result.errors,
    )


@router.post(
    "/cron/dispatch",
    response_model=DispatchResponse,
    dependencies=[Depends(require_cron)],
)
async def cron_dispatch(engine: Engine = Depends(get_engine)) -> DispatchResponse:
    """Run one claim-and-submit cycle followed by a polling pass."""
    dispatch = await engine.dispatch_once()
    poll = await engine.dispatcher.poll_active()
    return DispatchResponse(
        claimed=dispatch.claimed,
        submitted=dispatch.submitted,
        requeued=dispatch.requeued,
        failed=dispatch.failed,
        polled=poll.polled,
        succeeded=poll.succeeded,
    )
