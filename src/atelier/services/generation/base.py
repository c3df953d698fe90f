"""Generation provider interface and status translation."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import structlog

from atelier.models.job import Job
from atelier.services.exceptions import UnrecognizedProviderState

logger = structlog.get_logger(__name__)


class ProviderStatus(str, Enum):
    """Closed set of provider-side states the dispatcher understands."""

    RUNNING = "running"
    SAVING = "saving"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderState:
    """Result of one status poll.

    outputs: remote URLs of generated images (SUCCEEDED only)
    reason: provider failure reason (FAILED only)
    raw_status: status string as reported by the provider
    """

    status: ProviderStatus
    outputs: tuple[str, ...] = ()
    reason: str | None = None
    raw_status: str | None = None


def translate_status(
    table: dict[str, ProviderStatus], raw_status: str | None, provider: str
) -> ProviderStatus:
    """Map a provider status string through an explicit translation table.

    Raises:
        UnrecognizedProviderState: If the string is not in the table (logged first)
    """
    key = (raw_status or "").strip().lower()
    if key not in table:
        logger.warning("provider.status_unrecognized", provider=provider, raw_status=raw_status)
        raise UnrecognizedProviderState(f"{provider} reported unrecognized status {raw_status!r}")
    return table[key]


class GenerationProvider(ABC):
    """External image generation API (submit + poll; polling is the source of truth)."""

    name: str = "provider"

    def __init__(self, storage, sign_expires_seconds: int = 600):
        """Initialize provider.

        Args:
            storage: Storage collaborator with async sign_path(path, expires_in)
            sign_expires_seconds: Lifetime of signed image URLs handed to the provider
        """
        self.storage = storage
        self.sign_expires_seconds = sign_expires_seconds

    async def signed_image_urls(self, job: Job) -> list[str]:
        """Signed URLs for the job's images: references first, target last."""
        payload = job.request_payload
        paths = [*payload.get("ref_paths", []), payload["target_path"]]
        return list(
            await asyncio.gather(
                *(self.storage.sign_path(path, self.sign_expires_seconds) for path in paths)
            )
        )

    @abstractmethod
    async def submit(self, job: Job) -> str:
        """Send the generation request.

        Returns:
            Provider request id

        Raises:
            ProviderUnavailable: Retryable failure
            ProviderRejected: Request refused, not retryable
        """

    @abstractmethod
    async def poll_status(self, provider_request_id: str) -> ProviderState:
        """Fetch and translate the current provider status.

        Raises:
            ProviderRecordNotFound: Provider has no record of the request
            ProviderUnavailable: Retryable failure
            UnrecognizedProviderState: Status string outside the translation table
        """
