"""
Durable storage for generated scene assets.

Provides a unified interface over the local filesystem and AWS S3.

Usage:
    >>> storage = get_storage_backend()
    >>> url = await storage.upload_file("/tmp/scene.mp4", "projects/p-1/scenes/s-1.mp4")
"""

import asyncio
import shutil
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from config import settings
from pipeline.error_handler import StorageError

logger = structlog.get_logger()


class StorageBackend(ABC):
    """
    Abstract interface for asset storage operations.
    """

    @abstractmethod
    async def upload_file(self, local_path: str, cloud_path: str, content_type: str = "video/mp4") -> str:
        """
        Upload file from local filesystem to storage, replacing any existing object.

        Args:
            local_path: Path to local file
            cloud_path: Destination path (e.g., "projects/p-1/scenes/s-1.mp4")
            content_type: MIME type recorded with the object

        Returns:
            Public URL to access the file

        Raises:
            FileNotFoundError: If local file doesn't exist
            StorageError: If the upload fails
        """

    @abstractmethod
    def public_url(self, cloud_path: str) -> str:
        """URL under which a stored file is served."""


class LocalStorageBackend(StorageBackend):
    """
    Filesystem storage, served by the API under `PUBLIC_ASSET_BASE_URL`.

    Example:
        >>> storage = LocalStorageBackend("/var/assets", "http://localhost:8000/assets")
    """

    def __init__(self, base_path: str, public_base_url: str):
        self.base_path = Path(base_path)
        self.public_base_url = public_base_url.rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, cloud_path: str) -> Path:
        full_path = (self.base_path / cloud_path).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise StorageError(cloud_path, "path escapes storage root")
        return full_path

    def public_url(self, cloud_path: str) -> str:
        return f"{self.public_base_url}/{cloud_path}"

    async def upload_file(self, local_path: str, cloud_path: str, content_type: str = "video/mp4") -> str:
        if not Path(local_path).exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        destination = self._full_path(cloud_path)
        destination.parent.mkdir(parents=True, exist_ok=True)

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, partial(shutil.copyfile, local_path, destination))
        except OSError as e:
            logger.error("local_storage_write_failed", cloud_path=cloud_path, error=str(e))
            raise StorageError(cloud_path, str(e))

        logger.info("asset_stored", backend="local", cloud_path=cloud_path)
        return self.public_url(cloud_path)


class S3StorageBackend(StorageBackend):
    """
    AWS S3 storage implementation using boto3.

    Example:
        >>> storage = S3StorageBackend(
        ...     bucket="my-video-bucket",
        ...     aws_access_key="AKIA...",
        ...     aws_secret_key="...",
        ...     region="us-east-1"
        ... )
    """

    def __init__(
        self,
        bucket: str,
        aws_access_key: str,
        aws_secret_key: str,
        region: str = "us-east-1",
        s3_client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.s3_client = s3_client or boto3.client(
            "s3",
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=region,
        )
        logger.info("s3_storage_initialized", bucket=bucket, region=region)

    def public_url(self, cloud_path: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{cloud_path}"

    async def upload_file(self, local_path: str, cloud_path: str, content_type: str = "video/mp4") -> str:
        if not Path(local_path).exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")

        try:
            # Run blocking I/O in thread pool
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                partial(
                    self.s3_client.upload_file,
                    local_path,
                    self.bucket,
                    cloud_path,
                    ExtraArgs={"ContentType": content_type},
                ),
            )
        except ClientError as e:
            logger.error("s3_upload_failed", cloud_path=cloud_path, error=str(e))
            raise StorageError(cloud_path, str(e))

        logger.info("asset_stored", backend="s3", cloud_path=cloud_path)
        return self.public_url(cloud_path)


_storage_backend: Optional[StorageBackend] = None


def get_storage_backend() -> StorageBackend:
    """
    Storage backend selected by STORAGE_BACKEND ("local" or "s3").

    Raises:
        ValueError: If the backend is unknown or required config is missing
    """
    global _storage_backend
    if _storage_backend is not None:
        return _storage_backend

    backend_type = settings.STORAGE_BACKEND.lower()

    if backend_type == "local":
        _storage_backend = LocalStorageBackend(settings.LOCAL_STORAGE_PATH, settings.PUBLIC_ASSET_BASE_URL)
    elif backend_type == "s3":
        if not settings.STORAGE_BUCKET:
            raise ValueError("STORAGE_BUCKET environment variable is required")
        _storage_backend = S3StorageBackend(
            bucket=settings.STORAGE_BUCKET,
            aws_access_key=settings.AWS_ACCESS_KEY_ID,
            aws_secret_key=settings.AWS_SECRET_ACCESS_KEY,
            region=settings.AWS_REGION,
        )
    else:
        raise ValueError(f"Invalid STORAGE_BACKEND: {backend_type}. Must be 'local' or 's3'")

    return _storage_backend
