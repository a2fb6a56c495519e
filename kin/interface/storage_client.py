"""Object storage client for proof images (Supabase-style storage REST API)."""

import logging
import time
from typing import Protocol

import httpx

from kin.core.config import Settings, constants
from kin.core.errors import EvidenceUploadError
from kin.core.logging import span


logger = logging.getLogger(__name__)


CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}


class ObjectStore(Protocol):
    """Stores uploaded proof images and hands back a reference."""

    async def upload(self, path: str, data: bytes, content_type: str) -> str: ...


def build_proof_path(user_id: str, content_type: str, *, epoch_ms: int | None = None) -> str:
    """Time-unique object path ``{user_id}/{epoch_ms}.{ext}``."""
    timestamp = epoch_ms if epoch_ms is not None else time.time_ns() // 1_000_000
    extension = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"{user_id}/{timestamp}.{extension}"


class StorageClient:
    """ObjectStore that uploads to a storage bucket over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        bucket: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._api_key = api_key
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "StorageClient":
        return cls(
            base_url=settings.storage_url,
            bucket=settings.storage_bucket,
            api_key=settings.storage_api_key,
            client=client,
        )

    def public_url(self, path: str) -> str:
        """Public URL for an uploaded object."""
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{path}"

    def _headers(self, content_type: str) -> dict[str, str]:
        headers = {"Content-Type": content_type, "x-upsert": "false"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["apikey"] = self._api_key
        return headers

    async def _post(self, client: httpx.AsyncClient, path: str, data: bytes, content_type: str) -> httpx.Response:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{path}"
        return await client.post(url, content=data, headers=self._headers(content_type))

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes and return the object's public URL.

        Raises:
            EvidenceUploadError: On network failures or non-2xx responses
        """
        with span("storage_client.upload"):
            try:
                if self._client is not None:
                    response = await self._post(self._client, path, data, content_type)
                else:
                    async with httpx.AsyncClient(timeout=constants.UPLOAD_TIMEOUT_SECONDS) as client:
                        response = await self._post(client, path, data, content_type)
            except httpx.HTTPError as e:
                logger.error("evidence_upload_failed", extra={"path": path, "error": str(e)})
                raise EvidenceUploadError(f"Upload of {path} failed: {e}") from e

            if not response.is_success:
                logger.error(
                    "evidence_upload_failed",
                    extra={"path": path, "status_code": response.status_code, "body": response.text[:200]},
                )
                raise EvidenceUploadError(f"Storage returned status {response.status_code} for {path}")

            logger.info("Uploaded proof image", extra={"path": path, "bytes": len(data)})
            return self.public_url(path)
