"""Job repository for the dispatch backend.

Provides data access methods for Job entities. Every status change goes through
transition(), a single conditional UPDATE guarded on the current status (and
optionally the row version), so concurrent workers can never both win the same move.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.core.timezone import utc_now
from atelier.models.job import (
    ACTIVE_STATUSES,
    IN_FLIGHT_STATUSES,
    FailureKind,
    Job,
    JobStatus,
    PromptStatus,
    check_transition,
)
from atelier.services.exceptions import ConflictError

ERROR_MAX_LENGTH = 1000


@dataclass
class ClaimFilter:
    """Constraints applied by claim_next.

    max_in_flight: global cap on submitting+submitted+running+saving jobs (None = no cap)
    owner_max_in_flight: per-owner cap on the same statuses (None = no cap)
    owner_id: restrict claiming to one owner
    """

    max_in_flight: int | None = None
    owner_max_in_flight: int | None = None
    owner_id: str | None = None


class JobRepository:
    """Repository for Job entities.

    Claim queries use FOR UPDATE SKIP LOCKED on PostgreSQL so concurrent
    dispatchers scan non-overlapping candidate sets.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def transition(
        self,
        job_id: UUID,
        from_states: Iterable[JobStatus],
        to_state: JobStatus,
        expected_version: int | None = None,
        **fields: Any,
    ) -> Job:
        """Atomically move a job from one of from_states to to_state.

        Executes:
            UPDATE jobs SET status = :to_state, version = version + 1, updated_at = now, ...
            WHERE id = :job_id AND status IN (:from_states) [AND version = :expected_version]

        Field rules enforced on the way in:
        - entering submitted requires provider_request_id
        - entering queued clears provider_request_id, error, failure_kind and outputs
        - entering failed requires error (truncated to 1000 characters)

        Args:
            job_id: Job to move
            from_states: Statuses the job must currently be in
            to_state: Target status
            expected_version: Optional optimistic version guard
            **fields: Auxiliary column values written in the same UPDATE

        Returns:
            The job as persisted after the update

        Raises:
            InvalidStateTransition: If any from_state -> to_state edge is not allowed
            ValueError: If a required field for to_state is missing
            ConflictError: If no row matched (job moved concurrently or does not exist)
        """
        from_states = tuple(from_states)
        if not from_states:
            raise ValueError("from_states cannot be empty")
        for from_state in from_states:
            check_transition(from_state, to_state)

        if to_state == JobStatus.SUBMITTED and not fields.get("provider_request_id"):
            raise ValueError("provider_request_id is required to enter submitted")
        if to_state == JobStatus.QUEUED:
            fields.setdefault("provider_request_id", None)
            fields.setdefault("error", None)
            fields.setdefault("failure_kind", None)
            fields.setdefault("persist_attempts", 0)
            fields.setdefault("output_paths", None)
        if to_state == JobStatus.FAILED:
            if not fields.get("error"):
                raise ValueError("error is required to enter failed")
            fields["error"] = str(fields["error"])[:ERROR_MAX_LENGTH]

        stmt = update(Job).where(
            Job.id == job_id,  # type: ignore[arg-type]
            Job.status.in_(from_states),  # type: ignore[attr-defined]
        )
        if expected_version is not None:
            stmt = stmt.where(Job.version == expected_version)  # type: ignore[arg-type]

        result = await self.session.execute(
            stmt.values(
                status=to_state,
                version=Job.version + 1,
                updated_at=utc_now(),
                **fields,
            ).execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise ConflictError(
                f"Job {job_id} is not in {[s.value for s in from_states]}"
                + (f" at version {expected_version}" if expected_version is not None else "")
            )

        job = await self.get_by_id(job_id)
        assert job is not None
        return job

    async def claim_next(
        self, claim_filter: ClaimFilter, limit: int, scan_limit: int = 100
    ) -> list[Job]:
        """Claim up to limit dispatch-eligible jobs, moving them queued -> submitting.

        Query explanation:
        - WHERE status = 'queued': Not yet claimed
        - AND prompt_status IS NULL OR 'completed': Prompt dependency resolved or absent
        - AND next_attempt_at IS NULL OR <= now: Backoff delay expired
        - AND owner_id NOT IN (capped owners): Owners at their in-flight cap are skipped
        - ORDER BY created_at ASC: FIFO admission
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Global and per-owner caps are counted inside the same transaction, so they
        are best-effort under concurrent claimers.

        Args:
            claim_filter: Caps and optional owner restriction
            limit: Maximum number of jobs to claim
            scan_limit: Maximum number of candidates to lock and inspect

        Returns:
            Claimed jobs in FIFO order, now in submitting
        """
        if limit <= 0:
            return []

        capacity = limit
        if claim_filter.max_in_flight is not None:
            capacity = min(capacity, claim_filter.max_in_flight - await self.count_in_flight())
        if capacity <= 0:
            return []

        owner_counts: dict[str, int] = {}
        if claim_filter.owner_max_in_flight is not None:
            owner_counts = await self.count_in_flight_by_owner()

        now = utc_now()
        stmt = select(Job).where(
            Job.status == JobStatus.QUEUED,  # type: ignore[arg-type]
            or_(
                Job.prompt_status.is_(None),  # type: ignore[union-attr]
                Job.prompt_status == PromptStatus.COMPLETED,  # type: ignore[arg-type]
            ),
            or_(
                Job.next_attempt_at.is_(None),  # type: ignore[union-attr]
                Job.next_attempt_at <= now,  # type: ignore[arg-type,operator]
            ),
        )
        if claim_filter.owner_id is not None:
            stmt = stmt.where(Job.owner_id == claim_filter.owner_id)  # type: ignore[arg-type]
        if claim_filter.owner_max_in_flight is not None:
            capped = [
                owner_id
                for owner_id, count in owner_counts.items()
                if count >= claim_filter.owner_max_in_flight
            ]
            if capped:
                stmt = stmt.where(Job.owner_id.not_in(capped))  # type: ignore[attr-defined]

        # FOR UPDATE SKIP LOCKED ensures dispatcher coordination
        result = await self.session.execute(
            stmt.order_by(Job.created_at.asc())  # type: ignore[attr-defined]
            .limit(scan_limit)
            .with_for_update(skip_locked=True)
        )
        candidates = list(result.scalars().all())

        claimed: list[Job] = []
        for candidate in candidates:
            if len(claimed) >= capacity:
                break
            in_flight = owner_counts.get(candidate.owner_id, 0)
            if (
                claim_filter.owner_max_in_flight is not None
                and in_flight >= claim_filter.owner_max_in_flight
            ):
                continue
            try:
                job = await self.transition(
                    candidate.id,
                    {JobStatus.QUEUED},
                    JobStatus.SUBMITTING,
                    expected_version=candidate.version,
                )
            except ConflictError:
                continue
            owner_counts[job.owner_id] = in_flight + 1
            claimed.append(job)

        return claimed

    async def find_stuck(
        self,
        states: Iterable[JobStatus],
        cutoff: datetime,
        owner_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Retrieve jobs sitting in one of states since before cutoff.

        Args:
            states: Non-terminal statuses to inspect
            cutoff: Jobs whose updated_at is at or before this time are stuck
            owner_id: Optional owner filter
            limit: Optional maximum number of jobs

        Returns:
            Stuck jobs, longest-waiting first
        """
        stmt = select(Job).where(
            Job.status.in_(tuple(states)),  # type: ignore[attr-defined]
            Job.updated_at <= cutoff,  # type: ignore[arg-type,operator]
        )
        if owner_id is not None:
            stmt = stmt.where(Job.owner_id == owner_id)  # type: ignore[arg-type]
        stmt = stmt.order_by(Job.updated_at.asc())  # type: ignore[attr-defined]
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_failed(
        self, kinds: Iterable[FailureKind], owner_id: str | None = None
    ) -> list[Job]:
        """Retrieve failed jobs with one of the given failure kinds.

        Args:
            kinds: Failure kinds to include
            owner_id: Optional owner filter

        Returns:
            Failed jobs ordered by creation time
        """
        stmt = select(Job).where(
            Job.status == JobStatus.FAILED,  # type: ignore[arg-type]
            Job.failure_kind.in_(tuple(kinds)),  # type: ignore[union-attr]
        )
        if owner_id is not None:
            stmt = stmt.where(Job.owner_id == owner_id)  # type: ignore[arg-type]
        result = await self.session.execute(stmt.order_by(Job.created_at.asc()))  # type: ignore[attr-defined]
        return list(result.scalars().all())

    async def list_active(self, owner_id: str) -> list[Job]:
        """Retrieve an owner's non-terminal jobs ordered by creation time.

        Args:
            owner_id: Owner identifier

        Returns:
            Jobs in queued, submitting, submitted, running or saving
        """
        result = await self.session.execute(
            select(Job)
            .where(
                Job.owner_id == owner_id,  # type: ignore[arg-type]
                Job.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
            )
            .order_by(Job.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_pollable(self, saving_cutoff: datetime, limit: int = 100) -> list[Job]:
        """Retrieve jobs whose provider status should be polled.

        Includes submitted and running jobs, and saving jobs whose persistence
        lease (updated_at) expired before saving_cutoff.

        Args:
            saving_cutoff: Saving jobs updated at or before this time are pollable
            limit: Maximum number of jobs

        Returns:
            Pollable jobs, least recently updated first
        """
        result = await self.session.execute(
            select(Job)
            .where(
                or_(
                    Job.status.in_((JobStatus.SUBMITTED, JobStatus.RUNNING)),  # type: ignore[attr-defined]
                    (Job.status == JobStatus.SAVING) & (Job.updated_at <= saving_cutoff),  # type: ignore[arg-type,operator]
                )
            )
            .order_by(Job.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_in_flight(self) -> int:
        """Count jobs occupying a provider slot (submitting, submitted, running, saving)."""
        result = await self.session.execute(
            select(func.count(Job.id)).where(Job.status.in_(IN_FLIGHT_STATUSES))  # type: ignore[arg-type,attr-defined]
        )
        return result.scalar() or 0

    async def count_in_flight_by_owner(self) -> dict[str, int]:
        """Count in-flight jobs per owner."""
        result = await self.session.execute(
            select(Job.owner_id, func.count(Job.id))  # type: ignore[arg-type]
            .where(Job.status.in_(IN_FLIGHT_STATUSES))  # type: ignore[attr-defined]
            .group_by(Job.owner_id)
        )
        return {owner_id: count for owner_id, count in result.all()}

    async def queue_position(self, job: Job) -> int:
        """Number of the owner's queued jobs created before this job (FIFO rank, 0-based).

        Args:
            job: Job to rank

        Returns:
            Count of earlier queued jobs for the same owner
        """
        result = await self.session.execute(
            select(func.count(Job.id)).where(  # type: ignore[arg-type]
                Job.owner_id == job.owner_id,  # type: ignore[arg-type]
                Job.status == JobStatus.QUEUED,  # type: ignore[arg-type]
                Job.created_at < job.created_at,  # type: ignore[arg-type,operator]
            )
        )
        return result.scalar() or 0

    async def status_counts(self) -> dict[JobStatus, int]:
        """Count jobs per status (statuses with no jobs are reported as 0)."""
        result = await self.session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)  # type: ignore[arg-type]
        )
        counts = {status: 0 for status in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status)] = count
        return counts

    async def apply_generated_prompt(self, job_id: UUID, prompt: str) -> Job:
        """Write the generated prompt into the job payload exactly once.

        Guarded on prompt_status pending/generating and the row version, so a
        second writer (retry racing a completion) raises ConflictError.

        Args:
            job_id: Parent job
            prompt: Generated prompt text

        Returns:
            Updated job with prompt_status completed

        Raises:
            ConflictError: If the prompt was already resolved or the job changed concurrently
        """
        job = await self.get_by_id(job_id)
        if job is None:
            raise ConflictError(f"Job {job_id} not found")

        payload = dict(job.request_payload)
        payload["prompt"] = prompt

        result = await self.session.execute(
            update(Job)
            .where(
                Job.id == job_id,  # type: ignore[arg-type]
                Job.version == job.version,  # type: ignore[arg-type]
                Job.prompt_status.in_((PromptStatus.PENDING, PromptStatus.GENERATING)),  # type: ignore[union-attr]
            )
            .values(
                request_payload=payload,
                prompt_status=PromptStatus.COMPLETED,
                version=Job.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise ConflictError(f"Prompt for job {job_id} already resolved")

        updated = await self.get_by_id(job_id)
        assert updated is not None
        return updated

    async def set_prompt_status(
        self, job_id: UUID, from_statuses: Iterable[PromptStatus], to_status: PromptStatus
    ) -> bool:
        """Move a job's prompt_status without touching its lifecycle status.

        Args:
            job_id: Parent job
            from_statuses: Prompt statuses the job must currently have
            to_status: New prompt status

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(Job)
            .where(
                Job.id == job_id,  # type: ignore[arg-type]
                Job.prompt_status.in_(tuple(from_statuses)),  # type: ignore[union-attr]
            )
            .values(prompt_status=to_status, version=Job.version + 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]
