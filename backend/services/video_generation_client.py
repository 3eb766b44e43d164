"""
Video generation provider client (Sora2API-compatible HTTP API).

Two calls are consumed:
- POST {base}/generate            -> task id
- GET  {base}/record-info?taskId= -> success flag, video URL, error message

Every method takes the API key explicitly so it can be driven by the key
rotator; no key is stored on the client.
"""

from dataclasses import dataclass
from typing import List, Optional

import httpx
import structlog

from config import settings
from pipeline.error_handler import ProviderError

logger = structlog.get_logger(__name__)

PROVIDER_NAME = "Sora2API"

ASPECT_RATIOS = {
    "16:9": "landscape",
    "9:16": "portrait",
}


class GenerationFlag:
    """Provider success flag values"""
    IN_PROGRESS = 0
    SUCCESS = 1
    SUBMISSION_FAILED = 2
    GENERATION_FAILED = 3

    FAILED = (SUBMISSION_FAILED, GENERATION_FAILED)


@dataclass
class GenerationStatus:
    """Interpreted provider status for one generation task"""
    flag: int
    video_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.flag == GenerationFlag.SUCCESS and bool(self.video_url)

    @property
    def is_failed(self) -> bool:
        return self.flag in GenerationFlag.FAILED


def build_generation_payload(
    prompt: str,
    aspect_ratio: str = "16:9",
    reference_image: Optional[str] = None,
) -> dict:
    """
    Build the provider request body for one scene.

    Example:
        >>> build_generation_payload("A robot waves", "9:16")
        {'prompt': 'A robot waves', 'aspectRatio': 'portrait', 'quality': 'hd'}
    """
    payload = {
        "prompt": prompt,
        "aspectRatio": ASPECT_RATIOS.get(aspect_ratio, "landscape"),
        "quality": "hd",
    }
    if reference_image:
        payload["imageUrls"] = [reference_image]
    return payload


class VideoGenerationClient:
    """
    Thin async wrapper over the generation provider's HTTP API.

    Usage:
        client = VideoGenerationClient()
        task_id = await client.submit(api_key, build_generation_payload("..."))
        status = await client.get_status(api_key, task_id)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.VIDEO_GENERATION_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _unwrap(response: httpx.Response, default_error: str) -> dict:
        if response.status_code >= 400:
            raise ProviderError(PROVIDER_NAME, response.text or default_error, response.status_code)

        result = response.json()
        if result.get("code") != 200:
            raise ProviderError(PROVIDER_NAME, result.get("msg") or default_error)
        return result.get("data") or {}

    async def submit(self, api_key: str, payload: dict) -> str:
        """
        Create a generation task.

        Returns:
            Opaque task id (job handle)

        Raises:
            ProviderError: Non-2xx response, non-200 body code, or missing task id
        """
        async with self._client() as client:
            response = await client.post(
                "/generate",
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
            )

        data = self._unwrap(response, "Failed to create video generation task")
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderError(PROVIDER_NAME, "No taskId returned")

        logger.info("generation_task_created", task_id=task_id)
        return task_id

    async def get_status(self, api_key: str, task_id: str) -> GenerationStatus:
        """Query the provider for the state of one task."""
        async with self._client() as client:
            response = await client.get(
                "/record-info",
                params={"taskId": task_id},
                headers={"Authorization": f"Bearer {api_key}"},
            )

        data = self._unwrap(response, "Failed to check task status")
        flag = int(data.get("successFlag", GenerationFlag.IN_PROGRESS) or 0)
        video_url = self._first_url(data.get("response") or {})

        return GenerationStatus(
            flag=flag,
            video_url=video_url,
            error_message=data.get("errorMessage"),
        )

    @staticmethod
    def _first_url(response: dict) -> Optional[str]:
        # The provider has returned the URL under different keys over time
        for key in ("imageUrl", "videoUrl", "resultUrl"):
            value = response.get(key)
            if value:
                return value
        urls: List[str] = response.get("resultUrls") or []
        return urls[0] if urls else None
