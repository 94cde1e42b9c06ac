"""Analytics sink — batched product telemetry.

Events are queued in memory with common properties (session id, timestamp,
platform) and flushed to the backend as ``analytics`` data points, either
when the queue reaches the batch size or on a periodic loop. A failed batch
goes back to the head of the queue so ordering is preserved on retry.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from sthealth.config.settings import ANALYTICS_BATCH_SIZE, ANALYTICS_FLUSH_INTERVAL_SECONDS
from sthealth.models.messages import AnalyticsEventData, DataPointCreate
from sthealth.services.backend_client import BackendClient

logger = logging.getLogger(__name__)

DATA_TYPE = "analytics"
SOURCE = "app_tracking"
PLATFORM = "server"
MAX_QUEUE = 1000  # oldest events drop first beyond this


class AnalyticsSink:
    def __init__(
        self,
        backend: BackendClient,
        batch_size: int = ANALYTICS_BATCH_SIZE,
        flush_interval: float = ANALYTICS_FLUSH_INTERVAL_SECONDS,
    ):
        self.backend = backend
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._queue: deque[AnalyticsEventData] = deque(maxlen=MAX_QUEUE)
        self._flush_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._pending_flush: Optional[asyncio.Task] = None
        self.session_id = str(uuid.uuid4())
        self._session_started: Optional[datetime] = None

    @property
    def queued(self) -> int:
        return len(self._queue)

    # -- Tracking --

    def track(self, event_name: str, properties: dict[str, Any] | None = None) -> None:
        now = datetime.now(timezone.utc)
        props = dict(properties or {})
        props.update({
            "session_id": self.session_id,
            "timestamp": now.isoformat(),
            "platform": PLATFORM,
        })
        self._queue.append(AnalyticsEventData(
            event_name=event_name,
            properties=props,
            timestamp=now.isoformat(),
        ))
        if len(self._queue) >= self.batch_size:
            self._schedule_flush()

    def start_session(self) -> None:
        self._session_started = datetime.now(timezone.utc)
        self.session_id = str(uuid.uuid4())
        self.track("session_started")

    def end_session(self) -> None:
        if self._session_started is not None:
            duration = (datetime.now(timezone.utc) - self._session_started).total_seconds()
            self.track("session_ended", {"duration_seconds": duration})
            self._session_started = None
        self._schedule_flush()

    # -- Flushing --

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._pending_flush is None or self._pending_flush.done():
            self._pending_flush = loop.create_task(self.flush())

    async def flush(self) -> int:
        """Send at most one batch. Returns the number of events delivered."""
        async with self._flush_lock:
            if not self._queue or not self.backend.enabled:
                return 0

            batch = [self._queue.popleft() for _ in range(min(self.batch_size, len(self._queue)))]
            points = [
                DataPointCreate(data_type=DATA_TYPE, source=SOURCE, payload=event.model_dump())
                for event in batch
            ]
            try:
                await self.backend.submit_data_points(points)
            except Exception as exc:
                logger.warning("Analytics batch of %d failed, re-queued: %s", len(batch), exc)
                self._queue.extendleft(reversed(batch))
                return 0

            logger.info("Analytics batch sent: %d events", len(batch))
            return len(batch)

    async def _flush_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._flush_loop())
            logger.info("Analytics flush loop started (every %ss)", self.flush_interval)

    async def stop(self) -> None:
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        await self.flush()
