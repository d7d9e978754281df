"""
Supabase Storage client for generated artifacts
Objects are written under deterministic keys and served from a public URL
"""

import asyncio
from typing import Any, Callable, Optional

import structlog
from supabase import Client, create_client

from super_router.config import RouterConfig, get_config
from super_router.errors import StorageUploadFailed

logger = structlog.get_logger()


def artifact_key(endpoint_path: str, prompt_hash: str, extension: str) -> str:
    """
    Storage key for an artifact.

    Format: {endpoint path without leading slash}/{fingerprint}.{ext}
    Identical requests map to the same object, so a duplicate upload replaces it.
    """
    prefix = endpoint_path.strip("/") or "media"
    return f"{prefix}/{prompt_hash}.{extension}"


class ArtifactStore:
    """
    Blob storage for generated media

    Features:
    - Upsert uploads, so retries and duplicate generations converge on one object
    - Public URLs from a CDN prefix or the bucket's own public endpoint
    - Object deletion for the expiry sweep
    """

    def __init__(
        self,
        client: Client,
        bucket_name: str = "generated-media",
        cdn_url: str = "",
        timeout: float = 30.0,
    ):
        self.client = client
        self.bucket_name = bucket_name
        self.cdn_url = cdn_url.rstrip("/")
        self.timeout = timeout

    async def _run(self, query: Callable[[], Any]) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(query), timeout=self.timeout)

    async def upload(self, data: bytes, content_type: str, key: str) -> str:
        """
        Upload bytes and return the public URL.

        Raises StorageUploadFailed on any error; the caller owns retries.
        """
        try:
            await self._run(
                lambda: self.client.storage.from_(self.bucket_name).upload(
                    path=key,
                    file=data,
                    file_options={
                        "content-type": content_type,
                        "upsert": "true",
                    },
                )
            )
        except asyncio.TimeoutError as e:
            logger.error("artifact_upload_timeout", storage_key=key, timeout=self.timeout)
            raise StorageUploadFailed(f"Upload of {key} timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error("artifact_upload_failed", storage_key=key, error=str(e))
            raise StorageUploadFailed(f"Upload of {key} failed: {e}") from e

        url = self.public_url(key)
        logger.info("artifact_uploaded", storage_key=key, size_bytes=len(data), url=url)
        return url

    def public_url(self, key: str) -> str:
        if self.cdn_url:
            return f"{self.cdn_url}/{key}"
        url = self.client.storage.from_(self.bucket_name).get_public_url(key)
        return url.rstrip("?")

    async def delete(self, key: str) -> None:
        """Remove an object; raises on failure so the sweep can log and move on"""
        await self._run(lambda: self.client.storage.from_(self.bucket_name).remove([key]))
        logger.info("artifact_deleted", storage_key=key)

    async def ping(self) -> None:
        await self._run(lambda: self.client.storage.list_buckets())


# Singleton instance
_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store(config: Optional[RouterConfig] = None) -> ArtifactStore:
    """Get or create the singleton artifact store from configuration"""
    global _artifact_store

    if _artifact_store is None:
        config = config or get_config()
        client = create_client(config.effective_storage_url, config.effective_storage_key)
        _artifact_store = ArtifactStore(
            client,
            bucket_name=config.storage_bucket,
            cdn_url=config.storage_cdn_url,
            timeout=config.storage_timeout,
        )

    return _artifact_store
