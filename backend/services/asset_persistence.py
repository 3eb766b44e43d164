"""
Materializes provider-hosted scene videos into durable storage.

Provider result URLs are short-lived, so a completed scene's clip is
downloaded once and re-hosted before the scene is marked completed.
"""

import logging
import os
import tempfile
from typing import Optional

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings
from pipeline.error_handler import AssetDownloadError
from services.storage_backend import StorageBackend, get_storage_backend

logger = structlog.get_logger(__name__)


def scene_asset_path(project_id: str, scene_id: str) -> str:
    """
    Storage path for a scene's generated clip.

    Examples:
        >>> scene_asset_path("p-1", "s-9")
        'projects/p-1/scenes/s-9.mp4'
    """
    return f"projects/{project_id}/scenes/{scene_id}.mp4"


class AssetPersistenceService:
    """
    Downloads a remote asset and stores it through a storage backend.

    Example:
        >>> service = AssetPersistenceService()
        >>> url = await service.persist_scene_video("p-1", "s-9", "https://provider/video.mp4")
    """

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._storage = storage
        self.timeout = timeout or settings.ASSET_DOWNLOAD_TIMEOUT
        self.transport = transport

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            self._storage = get_storage_backend()
        return self._storage

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
        reraise=True,
    )
    async def download(self, url: str, local_path: str) -> str:
        """Stream a remote file to disk, retrying transport errors."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise AssetDownloadError(url, f"HTTP {response.status_code}")
                with open(local_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        return local_path

    async def persist_scene_video(self, project_id: str, scene_id: str, source_url: str) -> str:
        """
        Copy a provider-hosted clip into storage.

        Returns:
            Public URL of the stored clip
        """
        cloud_path = scene_asset_path(project_id, scene_id)
        fd, local_path = tempfile.mkstemp(prefix=f"scene_{scene_id}_", suffix=".mp4")
        os.close(fd)

        try:
            try:
                await self.download(source_url, local_path)
            except httpx.TransportError as e:
                raise AssetDownloadError(source_url, str(e))

            url = await self.storage.upload_file(local_path, cloud_path, content_type="video/mp4")
            logger.info("scene_asset_persisted", project_id=project_id, scene_id=scene_id, url=url)
            return url
        finally:
            if os.path.exists(local_path):
                os.remove(local_path)
