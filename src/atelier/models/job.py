"""Job entity - one image generation request with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utc_now


class JobStatus(str, Enum):
    """Job lifecycle status.

    SUBMITTING is the internal claimed state: a dispatcher owns the job and a
    provider submission is in flight.
    """

    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SAVING = "saving"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PromptStatus(str, Enum):
    """Prompt enrichment lifecycle status (shared by Job.prompt_status and PromptJob.status)."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Why a job reached failed."""

    REJECTED = "rejected"
    PROVIDER_FAILED = "provider_failed"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    PROMPT_FAILED = "prompt_failed"


class InvalidStateTransition(Exception):
    """Raised when attempting a job state transition the state machine does not allow."""

    pass


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.SUBMITTING, JobStatus.FAILED}),
    JobStatus.SUBMITTING: frozenset({JobStatus.SUBMITTED, JobStatus.QUEUED, JobStatus.FAILED}),
    JobStatus.SUBMITTED: frozenset(
        {JobStatus.RUNNING, JobStatus.SAVING, JobStatus.QUEUED, JobStatus.FAILED}
    ),
    JobStatus.RUNNING: frozenset({JobStatus.SAVING, JobStatus.QUEUED, JobStatus.FAILED}),
    # saving -> saving renews the persistence lease
    JobStatus.SAVING: frozenset(
        {JobStatus.SAVING, JobStatus.SUCCEEDED, JobStatus.QUEUED, JobStatus.FAILED}
    ),
    # failed -> queued only through the admin reset
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.SUCCEEDED: frozenset(),
}

ACTIVE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.SUBMITTING,
    JobStatus.SUBMITTED,
    JobStatus.RUNNING,
    JobStatus.SAVING,
)

# Jobs occupying a provider slot (counted against concurrency caps)
IN_FLIGHT_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.SUBMITTING,
    JobStatus.SUBMITTED,
    JobStatus.RUNNING,
    JobStatus.SAVING,
)

# Statuses in which the provider has accepted the job
PROVIDER_BOUND_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.SUBMITTED,
    JobStatus.RUNNING,
    JobStatus.SAVING,
    JobStatus.SUCCEEDED,
)

TERMINAL_STATUSES: tuple[JobStatus, ...] = (JobStatus.SUCCEEDED, JobStatus.FAILED)


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Check whether the state machine allows moving from one status to another."""
    return to_status in ALLOWED_TRANSITIONS[from_status]


def check_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    """Validate a single transition.

    Raises:
        InvalidStateTransition: If the state machine has no edge from_status -> to_status
    """
    if not can_transition(from_status, to_status):
        raise InvalidStateTransition(
            f"Cannot move job from {from_status.value} to {to_status.value}."
        )


class Job(SQLModel, table=True):
    """Job represents one generation request tracked through the dispatch pipeline."""

    __tablename__ = "jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    row_id: Optional[str] = Field(default=None, max_length=255)
    variant_row_id: Optional[str] = Field(default=None, max_length=255)
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)

    provider: Optional[str] = Field(default=None, max_length=50)
    provider_request_id: Optional[str] = Field(default=None, max_length=255, index=True)

    # Prompt enrichment dependency
    prompt_job_id: Optional[UUID] = Field(default=None)
    prompt_status: Optional[PromptStatus] = Field(default=None)

    request_payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    output_paths: Optional[list] = Field(default=None, sa_column=Column(JSON))

    attempts: int = Field(default=0, ge=0)
    persist_attempts: int = Field(default=0, ge=0)
    next_attempt_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=1000)
    failure_kind: Optional[FailureKind] = Field(default=None)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_dispatch_eligible(self) -> bool:
        """Queued and not blocked by an unresolved prompt dependency."""
        return self.status == JobStatus.QUEUED and self.prompt_status in (
            None,
            PromptStatus.COMPLETED,
        )
