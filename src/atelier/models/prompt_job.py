"""PromptJob entity - prompt enrichment work attached to a parent Job."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utc_now
from atelier.models.job import InvalidStateTransition, PromptStatus


class PromptOperation(str, Enum):
    """What the prompt provider is asked to do."""

    GENERATE = "generate"
    ENHANCE = "enhance"


DEFAULT_PRIORITY = 5
ENHANCE_PRIORITY = 8

PROMPT_TRANSITIONS: dict[PromptStatus, frozenset[PromptStatus]] = {
    PromptStatus.PENDING: frozenset({PromptStatus.GENERATING, PromptStatus.FAILED}),
    # generating -> pending is a retry after a failed attempt
    PromptStatus.GENERATING: frozenset(
        {PromptStatus.COMPLETED, PromptStatus.PENDING, PromptStatus.FAILED}
    ),
    PromptStatus.COMPLETED: frozenset(),
    PromptStatus.FAILED: frozenset(),
}


def check_prompt_transition(from_status: PromptStatus, to_status: PromptStatus) -> None:
    """Validate a single prompt job transition.

    Raises:
        InvalidStateTransition: If the prompt lifecycle has no such edge
    """
    if to_status not in PROMPT_TRANSITIONS[from_status]:
        raise InvalidStateTransition(
            f"Cannot move prompt job from {from_status.value} to {to_status.value}."
        )


class PromptJob(SQLModel, table=True):
    """Tracks one prompt generation request.

    Lifecycle: pending -> generating -> completed | failed. A generating job whose
    attempt fails with retries left returns to pending with a backoff delay.
    """

    __tablename__ = "prompt_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="jobs.id", index=True)
    owner_id: str = Field(index=True, max_length=255)
    status: PromptStatus = Field(default=PromptStatus.PENDING, index=True)
    operation: PromptOperation = Field(default=PromptOperation.GENERATE)

    ref_paths: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    target_path: Optional[str] = Field(default=None, max_length=1024)
    existing_prompt: Optional[str] = Field(default=None)
    instructions: Optional[str] = Field(default=None, max_length=1000)

    priority: int = Field(default=DEFAULT_PRIORITY, ge=1, le=10)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    next_attempt_at: Optional[datetime] = Field(default=None)

    generated_prompt: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=1000)

    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
