"""Object-storage ContentStore over HTTP.

Uploads to ``{base_url}/object/{bucket}/{object_name}`` (upsert) and returns
the public URL ``{base_url}/object/public/{bucket}/{object_name}``, the
layout used by Supabase-style storage gateways.
"""
import logging
from typing import Optional

import httpx

from chatsync.adapters.base import ContentStore
from chatsync.errors import UploadError

logger = logging.getLogger(__name__)


class HttpContentStore(ContentStore):
    """Upload attachments with an ``httpx.AsyncClient``.

    Args:
        base_url: Storage API root, without trailing slash.
        bucket: Target bucket.
        api_key: Sent as a bearer token when given.
        timeout_seconds: Request timeout.
        client: Pre-built client (tests pass one with a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        bucket: str = "chat-images",
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def public_url(self, object_name: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{object_name}"

    async def upload(self, data: bytes, content_type: str, object_name: str) -> str:
        headers = {"Content-Type": content_type, "x-upsert": "true"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        url = f"{self.base_url}/object/{self.bucket}/{object_name}"
        try:
            resp = await self._client.post(url, content=data, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Upload of %s failed with HTTP %s", object_name, e.response.status_code
            )
            raise UploadError(f"upload failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("Upload of %s failed: %s", object_name, e)
            raise UploadError(f"upload failed: {e}") from e

        logger.debug("Uploaded %s (%d bytes)", object_name, len(data))
        return self.public_url(object_name)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
