"""Replicate predictions API client with error classification."""

import asyncio
from typing import Any

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError

from atelier.models.job import Job
from atelier.services.exceptions import (
    ProviderRecordNotFound,
    ProviderRejected,
    ProviderUnavailable,
    ServiceError,
)
from atelier.services.generation.base import (
    GenerationProvider,
    ProviderState,
    ProviderStatus,
    translate_status,
)

logger = structlog.get_logger(__name__)

REPLICATE_STATUSES = {
    "starting": ProviderStatus.RUNNING,
    "processing": ProviderStatus.RUNNING,
    "succeeded": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "canceled": ProviderStatus.FAILED,
}


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified error instance

    Classification rules:
        - Timeout errors → ProviderUnavailable
        - 429 (rate limit) → ProviderUnavailable
        - 5xx (service unavailable) → ProviderUnavailable
        - 404 → ProviderRecordNotFound
        - 401/403 (authentication) → ProviderRejected
        - Connection errors → ProviderUnavailable
        - Other errors → ProviderRejected
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()
    status = getattr(exception, "status", None)

    if (
        isinstance(exception, (httpx.TimeoutException, TimeoutError))
        or "timeout" in error_message_lower
    ):
        return ProviderUnavailable(f"Network timeout: {error_message}")

    if status == 429 or "429" in error_message or "rate limit" in error_message_lower:
        return ProviderUnavailable(f"Rate limit exceeded: {error_message}")

    if (isinstance(status, int) and status >= 500) or (
        "service unavailable" in error_message_lower
    ):
        return ProviderUnavailable(f"Service unavailable: {error_message}")

    if status == 404 or "not found" in error_message_lower:
        return ProviderRecordNotFound(f"Prediction not found: {error_message}")

    if (
        status in (401, 403)
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderRejected(f"Authentication failed: {error_message}")

    if isinstance(exception, (httpx.TransportError, ConnectionError, OSError)):
        return ProviderUnavailable(f"Connection error: {error_message}")

    return ProviderRejected(f"Permanent error: {error_message}")


def _output_urls(output: Any) -> tuple[str, ...]:
    """Normalize prediction output (URL string or list of URLs) to a tuple of strings."""
    if output is None:
        return ()
    if isinstance(output, (list, tuple)):
        return tuple(str(item) for item in output if item)
    return (str(output),)


class ReplicateProvider(GenerationProvider):
    """Generation provider backed by Replicate predictions.

    The SDK is synchronous, so every call runs in a worker thread.
    """

    name = "replicate"

    def __init__(
        self,
        storage,
        api_token: str,
        model: str = "bytedance/seedream-4",
        sign_expires_seconds: int = 600,
        timeout: float = 60.0,
    ):
        super().__init__(storage, sign_expires_seconds)
        self.model = model
        self.client = replicate.Client(api_token=api_token, timeout=timeout)

    def _build_input(self, job: Job, image_urls: list[str]) -> dict[str, Any]:
        payload = job.request_payload
        model_input: dict[str, Any] = {
            "prompt": payload.get("prompt") or "",
            "image_input": image_urls,
            "size": "custom",
            "width": payload.get("width", 4096),
            "height": payload.get("height", 4096),
        }
        for key, value in (payload.get("options") or {}).items():
            model_input.setdefault(key, value)
        return model_input

    async def submit(self, job: Job) -> str:
        """Create a prediction for the job.

        Returns:
            Replicate prediction id

        Raises:
            ProviderUnavailable: Rate limit, timeout or Replicate outage
            ProviderRejected: Missing prompt, authentication or validation failure
        """
        if not job.request_payload.get("prompt"):
            raise ProviderRejected("Job has no prompt")

        image_urls = await self.signed_image_urls(job)
        model_input = self._build_input(job, image_urls)

        def _create() -> Any:
            # "owner/name:version" pins a version, "owner/name" targets the model's latest
            if ":" in self.model:
                _, version = self.model.split(":", 1)
                return self.client.predictions.create(version=version, input=model_input)
            return self.client.models.predictions.create(model=self.model, input=model_input)

        try:
            prediction = await asyncio.to_thread(_create)
        except (ReplicateError, httpx.HTTPError, ConnectionError, OSError, TimeoutError) as e:
            classified = classify_error(e)
            if isinstance(classified, ProviderRecordNotFound):
                # Unknown model on submit is a configuration problem, not a missing prediction
                raise ProviderRejected(str(classified)) from e
            raise classified from e

        logger.info(
            "provider.submitted",
            provider=self.name,
            job_id=str(job.id),
            provider_request_id=prediction.id,
        )
        return prediction.id

    async def poll_status(self, provider_request_id: str) -> ProviderState:
        """Fetch a prediction and translate its status.

        Raises:
            ProviderRecordNotFound: Prediction id unknown to Replicate
            ProviderUnavailable: Rate limit, timeout or Replicate outage
            UnrecognizedProviderState: Status outside REPLICATE_STATUSES
        """
        try:
            prediction = await asyncio.to_thread(self.client.predictions.get, provider_request_id)
        except (ReplicateError, httpx.HTTPError, ConnectionError, OSError, TimeoutError) as e:
            classified = classify_error(e)
            if isinstance(classified, ProviderRejected):
                # Poll errors never fail a job directly
                raise ProviderUnavailable(str(classified)) from e
            raise classified from e

        status = translate_status(REPLICATE_STATUSES, prediction.status, self.name)
        if status == ProviderStatus.SUCCEEDED:
            return ProviderState(
                status=status, outputs=_output_urls(prediction.output), raw_status=prediction.status
            )
        if status == ProviderStatus.FAILED:
            return ProviderState(
                status=status,
                reason=str(prediction.error or f"Prediction {prediction.status}"),
                raw_status=prediction.status,
            )
        return ProviderState(status=status, raw_status=prediction.status)
