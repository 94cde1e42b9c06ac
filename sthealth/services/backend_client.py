"""Backend submission client — fire-and-forget telemetry over HTTP.

POSTs DataPointCreate records to ``<BACKEND_URL>/data-points/``. Failures are
logged and returned as ``False``; nothing here is retried synchronously.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

import httpx

from sthealth.config.settings import BACKEND_API_TOKEN, BACKEND_TIMEOUT_SECONDS, BACKEND_URL
from sthealth.models.messages import DataPointCreate

logger = logging.getLogger(__name__)

DATA_POINTS_PATH = "/data-points/"


class BackendClient:
    """Thin async wrapper over the backend's data-point endpoint."""

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        api_token: str = BACKEND_API_TOKEN,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport
        self._background: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def submit_data_points(self, points: Iterable[DataPointCreate]) -> bool:
        """Submit each point; returns True only if all were accepted."""
        points = list(points)
        if not points:
            return True
        if not self.enabled:
            logger.debug("Backend disabled, dropping %d data points", len(points))
            return True

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            for point in points:
                resp = await client.post(
                    DATA_POINTS_PATH,
                    headers=self._headers(),
                    json=point.model_dump(),
                )
                resp.raise_for_status()
        return True

    async def submit(self, data_type: str, source: str, payload: dict[str, Any]) -> bool:
        """Submit one point, swallowing and logging any failure."""
        point = DataPointCreate(data_type=data_type, source=source, payload=payload)
        try:
            return await self.submit_data_points([point])
        except httpx.HTTPError as exc:
            logger.warning("Backend submission of %s failed: %s", data_type, exc)
        except Exception as exc:
            logger.warning("Unexpected error submitting %s: %s", data_type, exc)
        return False

    def submit_in_background(self, data_type: str, source: str, payload: dict[str, Any]) -> None:
        """Schedule ``submit`` on the running loop without awaiting it."""
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, skipping background submission of %s", data_type)
            return
        task = loop.create_task(self.submit(data_type, source, payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for in-flight background submissions (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
