"""Supabase Storage client for signing input objects and persisting generated outputs."""

import secrets
import time

import httpx
import structlog

from atelier.services.exceptions import (
    StorageAuthError,
    StorageObjectNotFound,
    StorageUnavailable,
)

logger = structlog.get_logger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def _raise_for_status(response: httpx.Response, context: str) -> None:
    """Classify a storage response into the service error hierarchy."""
    if response.status_code < 400:
        return
    if response.status_code in (408, 429) or response.status_code >= 500:
        raise StorageUnavailable(
            f"{context}: service unavailable ({response.status_code}): {response.text}"
        )
    if response.status_code in (401, 403):
        raise StorageAuthError(
            f"{context}: access denied ({response.status_code}). "
            "Check STORAGE_SERVICE_KEY configuration in .env file."
        )
    # Supabase reports missing objects as 400 with "not_found" as well as 404
    if response.status_code == 404 or "not_found" in response.text.lower():
        raise StorageObjectNotFound(f"{context}: object not found: {response.text}")
    raise StorageObjectNotFound(
        f"{context}: request rejected ({response.status_code}): {response.text}"
    )


class SupabaseStorage:
    """Object storage collaborator backed by the Supabase Storage REST API.

    Object paths are "bucket/key"; a path without a slash lives in the inputs bucket.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        inputs_bucket: str = "inputs",
        outputs_bucket: str = "outputs",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize storage client.

        Args:
            base_url: Project URL (e.g., https://xyz.supabase.co)
            service_key: Service role key (from STORAGE_SERVICE_KEY env var)
            inputs_bucket: Bucket for bare object keys
            outputs_bucket: Bucket receiving generated outputs
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.inputs_bucket = inputs_bucket
        self.outputs_bucket = outputs_bucket
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def split_path(self, path: str) -> tuple[str, str]:
        """Split an object path into (bucket, key)."""
        if "/" not in path:
            return self.inputs_bucket, path
        bucket, key = path.split("/", 1)
        return bucket, key

    async def sign_path(self, path: str, expires_in: int) -> str:
        """Create a time-limited signed URL for an object.

        Args:
            path: Object path ("bucket/key" or "key")
            expires_in: URL lifetime in seconds

        Returns:
            Absolute signed URL reachable by external providers

        Raises:
            StorageUnavailable: Network timeout or storage-side error (retryable)
            StorageObjectNotFound: Object does not exist
            StorageAuthError: Service key rejected
        """
        bucket, key = self.split_path(path)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/storage/v1/object/sign/{bucket}/{key}",
                    headers=self.headers,
                    json={"expiresIn": expires_in},
                )
        except httpx.TimeoutException as e:
            raise StorageUnavailable(f"Signing {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise StorageUnavailable(f"Network error signing {path}: {e}") from e

        _raise_for_status(response, f"Signing {path}")

        signed = response.json().get("signedURL")
        if not signed:
            raise StorageUnavailable(f"Signing {path} returned no signedURL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    async def save_output(self, remote_url: str, owner_id: str) -> str:
        """Download a provider output and upload it to the outputs bucket.

        Args:
            remote_url: Provider CDN URL of the generated image
            owner_id: Owner the output is filed under

        Returns:
            Object path of the stored output ("outputs/{owner_id}/{ts}-{rand}.{ext}")

        Raises:
            StorageUnavailable: Download or upload failed transiently
            StorageObjectNotFound: Provider output no longer exists
            StorageAuthError: Service key rejected
        """
        try:
            async with self._client() as client:
                download = await client.get(remote_url, follow_redirects=True)
                _raise_for_status(download, "Downloading provider output")

                content_type = download.headers.get("content-type", "image/jpeg").split(";")[0]
                extension = CONTENT_TYPE_EXTENSIONS.get(content_type.strip().lower(), "jpg")
                key = f"{owner_id}/{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"

                upload = await client.post(
                    f"{self.base_url}/storage/v1/object/{self.outputs_bucket}/{key}",
                    headers={
                        **self.headers,
                        "Content-Type": content_type,
                        "x-upsert": "false",
                    },
                    content=download.content,
                )
                _raise_for_status(upload, "Uploading output")
        except httpx.TimeoutException as e:
            raise StorageUnavailable(f"Storage request timed out: {e}") from e
        except httpx.TransportError as e:
            raise StorageUnavailable(f"Network error persisting output: {e}") from e

        object_path = f"{self.outputs_bucket}/{key}"
        logger.info("storage.output_saved", owner_id=owner_id, object_path=object_path)
        return object_path
