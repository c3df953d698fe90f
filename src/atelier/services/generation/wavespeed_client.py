"""WaveSpeed v3 API client for asynchronous image edits."""

from typing import Any

import httpx
import structlog

from atelier.models.job import Job
from atelier.services.exceptions import (
    ProviderRecordNotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from atelier.services.generation.base import (
    GenerationProvider,
    ProviderState,
    ProviderStatus,
    translate_status,
)

logger = structlog.get_logger(__name__)

WAVESPEED_STATUSES = {
    "created": ProviderStatus.RUNNING,
    "queued": ProviderStatus.RUNNING,
    "processing": ProviderStatus.RUNNING,
    "completed": ProviderStatus.SUCCEEDED,
    "succeeded": ProviderStatus.SUCCEEDED,
    "failed": ProviderStatus.FAILED,
    "canceled": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
}

TRANSIENT_STATUS_CODES = (408, 429, 500, 502, 503, 504)


class WaveSpeedProvider(GenerationProvider):
    """Generation provider backed by the WaveSpeed prediction API."""

    name = "wavespeed"

    def __init__(
        self,
        storage,
        api_key: str,
        base_url: str = "https://api.wavespeed.ai",
        model_path: str = "bytedance/seedream-v4/edit",
        sign_expires_seconds: int = 600,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize WaveSpeed client.

        Args:
            storage: Storage collaborator used to sign image paths
            api_key: WaveSpeed API key (from WAVESPEED_API_KEY env var)
            base_url: API base URL
            model_path: Model route under /api/v3/
            sign_expires_seconds: Lifetime of signed image URLs
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        super().__init__(storage, sign_expires_seconds)
        self.base_url = base_url.rstrip("/")
        self.model_path = model_path.strip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Network error: {e}") from e

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise ProviderUnavailable(
                f"Service unavailable ({response.status_code}): {response.text}"
            )
        return response

    async def submit(self, job: Job) -> str:
        """Submit an edit request: references first, target image last.

        Returns:
            WaveSpeed prediction id

        Raises:
            ProviderUnavailable: Timeout, rate limit (429) or server error (5xx)
            ProviderRejected: Bad request, auth failure, or response without an id
        """
        payload = job.request_payload
        if not payload.get("prompt"):
            raise ProviderRejected("Job has no prompt")

        images = await self.signed_image_urls(job)
        body: dict[str, Any] = {
            "prompt": payload["prompt"],
            "images": images,
            "size": f"{payload.get('width', 4096)}*{payload.get('height', 4096)}",
            "enable_sync_mode": False,
            "enable_base64_output": False,
        }
        for key, value in (payload.get("options") or {}).items():
            body.setdefault(key, value)

        response = await self._request(
            "POST", f"{self.base_url}/api/v3/{self.model_path}", json=body
        )
        if response.status_code in (401, 403):
            raise ProviderRejected(
                f"Authentication failed ({response.status_code}). "
                "Check WAVESPEED_API_KEY configuration in .env file."
            )
        if response.status_code >= 400:
            raise ProviderRejected(f"Request rejected ({response.status_code}): {response.text}")

        result = response.json()
        data = result.get("data") or {}
        request_id = data.get("id")
        if not request_id:
            raise ProviderRejected(
                f"Submission returned no prediction id: {result.get('message') or result}"
            )

        logger.info(
            "provider.submitted",
            provider=self.name,
            job_id=str(job.id),
            provider_request_id=request_id,
        )
        return request_id

    async def poll_status(self, provider_request_id: str) -> ProviderState:
        """Fetch a prediction result and translate its status.

        Raises:
            ProviderRecordNotFound: Prediction id unknown to WaveSpeed (404)
            ProviderUnavailable: Timeout, rate limit or server error
            UnrecognizedProviderState: Status outside WAVESPEED_STATUSES
        """
        response = await self._request(
            "GET", f"{self.base_url}/api/v3/predictions/{provider_request_id}/result"
        )
        if response.status_code == 404:
            raise ProviderRecordNotFound(f"Prediction {provider_request_id} not found")
        if response.status_code >= 400:
            # Auth or request errors while polling are not the job's fault
            raise ProviderUnavailable(
                f"Polling {provider_request_id} failed ({response.status_code}): {response.text}"
            )

        data = response.json().get("data") or {}
        raw_status = data.get("status")
        status = translate_status(WAVESPEED_STATUSES, raw_status, self.name)

        if status == ProviderStatus.SUCCEEDED:
            outputs = tuple(str(url) for url in (data.get("outputs") or []) if url)
            return ProviderState(status=status, outputs=outputs, raw_status=raw_status)
        if status == ProviderStatus.FAILED:
            return ProviderState(
                status=status,
                reason=data.get("error") or f"Prediction {raw_status}",
                raw_status=raw_status,
            )
        return ProviderState(status=status, raw_status=raw_status)
