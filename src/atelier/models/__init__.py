"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
before the schema is created.
"""

from atelier.models.job import (
    FailureKind,
    InvalidStateTransition,
    Job,
    JobStatus,
    PromptStatus,
)
from atelier.models.prompt_job import PromptJob, PromptOperation

__all__ = [
    "Job",
    "JobStatus",
    "PromptStatus",
    "FailureKind",
    "InvalidStateTransition",
    "PromptJob",
    "PromptOperation",
]
