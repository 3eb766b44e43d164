"""
Video render provider client (Shotstack-compatible HTTP API).

- POST {base}/render       -> render id
- GET  {base}/render/{id}  -> status, progress, url
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from config import settings
from pipeline.error_handler import ProviderError

logger = structlog.get_logger(__name__)

PROVIDER_NAME = "Shotstack"


class RenderState:
    """Provider render statuses"""
    QUEUED = "queued"
    FETCHING = "fetching"
    RENDERING = "rendering"
    SAVING = "saving"
    DONE = "done"
    FAILED = "failed"

    IN_PROGRESS = (QUEUED, FETCHING, RENDERING, SAVING)


@dataclass
class RenderStatus:
    status: str
    progress: int = 0
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.status == RenderState.DONE

    @property
    def is_failed(self) -> bool:
        return self.status == RenderState.FAILED


class RenderClient:
    """
    Async wrapper over the render provider's HTTP API.

    Usage:
        client = RenderClient()
        render_id = await client.submit(api_key, edit)
        status = await client.get_status(api_key, render_id)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.VIDEO_RENDER_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def submit(self, api_key: str, edit: dict) -> str:
        """
        Submit a timeline for rendering.

        Returns:
            Render job id
        """
        async with self._client() as client:
            response = await client.post("/render", json=edit, headers={"x-api-key": api_key})

        if response.status_code >= 400:
            raise ProviderError(PROVIDER_NAME, response.text or "Render submission failed", response.status_code)

        render_id = (response.json().get("response") or {}).get("id")
        if not render_id:
            raise ProviderError(PROVIDER_NAME, "No render id returned")

        logger.info("render_submitted", render_id=render_id)
        return render_id

    async def get_status(self, api_key: str, render_id: str) -> RenderStatus:
        async with self._client() as client:
            response = await client.get(f"/render/{render_id}", headers={"x-api-key": api_key})

        if response.status_code >= 400:
            raise ProviderError(PROVIDER_NAME, response.text or "Render status check failed", response.status_code)

        body = response.json().get("response") or {}
        return RenderStatus(
            status=body.get("status", RenderState.QUEUED),
            progress=int(body.get("progress") or 0),
            url=body.get("url"),
            error=body.get("error"),
        )
