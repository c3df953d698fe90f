"""PromptJob repository for the prompt sub-queue."""

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.core.timezone import utc_now
from atelier.models.job import PromptStatus
from atelier.models.prompt_job import PromptJob, check_prompt_transition
from atelier.services.exceptions import ConflictError


class PromptJobRepository:
    """Repository for PromptJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, prompt_job_id: UUID) -> PromptJob | None:
        """Retrieve prompt job by UUID.

        Args:
            prompt_job_id: Prompt job's unique identifier

        Returns:
            PromptJob if found, None otherwise
        """
        result = await self.session.execute(
            select(PromptJob)
            .where(PromptJob.id == prompt_job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, prompt_job: PromptJob) -> PromptJob:
        """Persist new prompt job to database."""
        self.session.add(prompt_job)
        await self.session.flush()
        return prompt_job

    async def transition(
        self,
        prompt_job_id: UUID,
        from_states: Iterable[PromptStatus],
        to_state: PromptStatus,
        expected_version: int | None = None,
        **fields: Any,
    ) -> PromptJob:
        """Atomically move a prompt job from one of from_states to to_state.

        Args:
            prompt_job_id: Prompt job to move
            from_states: Statuses the prompt job must currently be in
            to_state: Target status
            expected_version: Optional optimistic version guard
            **fields: Auxiliary column values written in the same UPDATE

        Returns:
            The prompt job as persisted after the update

        Raises:
            InvalidStateTransition: If the prompt lifecycle has no such edge
            ConflictError: If no row matched
        """
        from_states = tuple(from_states)
        for from_state in from_states:
            check_prompt_transition(from_state, to_state)

        if "error" in fields and fields["error"] is not None:
            fields["error"] = str(fields["error"])[:1000]

        stmt = update(PromptJob).where(
            PromptJob.id == prompt_job_id,  # type: ignore[arg-type]
            PromptJob.status.in_(from_states),  # type: ignore[attr-defined]
        )
        if expected_version is not None:
            stmt = stmt.where(PromptJob.version == expected_version)  # type: ignore[arg-type]

        result = await self.session.execute(
            stmt.values(
                status=to_state,
                version=PromptJob.version + 1,
                updated_at=utc_now(),
                **fields,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise ConflictError(
                f"Prompt job {prompt_job_id} is not in {[s.value for s in from_states]}"
            )

        prompt_job = await self.get_by_id(prompt_job_id)
        assert prompt_job is not None
        return prompt_job

    async def claim_pending(self, limit: int) -> list[PromptJob]:
        """Claim up to limit pending prompt jobs, moving them to generating.

        Query explanation:
        - WHERE status = 'pending' AND next_attempt_at expired
        - ORDER BY priority DESC, created_at ASC: Urgent first, then FIFO
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            limit: Maximum number of prompt jobs to claim

        Returns:
            Claimed prompt jobs, now in generating
        """
        if limit <= 0:
            return []

        now = utc_now()
        result = await self.session.execute(
            select(PromptJob)
            .where(
                PromptJob.status == PromptStatus.PENDING,  # type: ignore[arg-type]
                or_(
                    PromptJob.next_attempt_at.is_(None),  # type: ignore[union-attr]
                    PromptJob.next_attempt_at <= now,  # type: ignore[arg-type,operator]
                ),
            )
            .order_by(PromptJob.priority.desc(), PromptJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidates = list(result.scalars().all())

        claimed: list[PromptJob] = []
        for candidate in candidates:
            try:
                prompt_job = await self.transition(
                    candidate.id,
                    {PromptStatus.PENDING},
                    PromptStatus.GENERATING,
                    expected_version=candidate.version,
                    started_at=now,
                )
            except ConflictError:
                continue
            claimed.append(prompt_job)
        return claimed

    async def find_stuck(
        self, states: Iterable[PromptStatus], cutoff: datetime, limit: int | None = None
    ) -> list[PromptJob]:
        """Retrieve prompt jobs in states whose updated_at is at or before cutoff."""
        stmt = (
            select(PromptJob)
            .where(
                PromptJob.status.in_(tuple(states)),  # type: ignore[attr-defined]
                PromptJob.updated_at <= cutoff,  # type: ignore[arg-type,operator]
            )
            .order_by(PromptJob.updated_at.asc())  # type: ignore[attr-defined]
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_pending_created_before(self, cutoff: datetime) -> list[PromptJob]:
        """Retrieve pending prompt jobs created at or before cutoff (expired requests)."""
        result = await self.session.execute(
            select(PromptJob)
            .where(
                PromptJob.status == PromptStatus.PENDING,  # type: ignore[arg-type]
                PromptJob.created_at <= cutoff,  # type: ignore[arg-type,operator]
            )
            .order_by(PromptJob.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def status_counts(self) -> dict[PromptStatus, int]:
        """Count prompt jobs per status (statuses with no jobs are reported as 0)."""
        result = await self.session.execute(
            select(PromptJob.status, func.count(PromptJob.id)).group_by(PromptJob.status)  # type: ignore[arg-type]
        )
        counts = {status: 0 for status in PromptStatus}
        for status, count in result.all():
            counts[PromptStatus(status)] = count
        return counts

    async def average_wait_seconds(self, sample_size: int = 100) -> float:
        """Average time between creation and first pickup over the most recent started jobs.

        Args:
            sample_size: Number of most recently created started jobs to average over

        Returns:
            Mean wait in seconds (0.0 when nothing has started yet)
        """
        result = await self.session.execute(
            select(PromptJob.created_at, PromptJob.started_at)  # type: ignore[arg-type]
            .where(PromptJob.started_at.is_not(None))  # type: ignore[union-attr]
            .order_by(PromptJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(sample_size)
        )
        waits = [(started - created).total_seconds() for created, started in result.all()]
        if not waits:
            return 0.0
        return sum(waits) / len(waits)

