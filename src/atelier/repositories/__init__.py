"""Repository layer for the dispatch backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from atelier.repositories.job import ClaimFilter, JobRepository
from atelier.repositories.prompt_job import PromptJobRepository

__all__ = [
    "ClaimFilter",
    "JobRepository",
    "PromptJobRepository",
]
