"""Nudge archive — terminal nudges and the persisted delivery clock.

Layout:
  nudge:archive:<id>         hash with the flattened Nudge
  nudge:archive              list of ids, newest first
  nudge:last_delivery_time   ISO 8601 timestamp of the last delivery
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import redis

from sthealth.models.nudge import Nudge

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "nudge:archive:"
ARCHIVE_INDEX = "nudge:archive"
LAST_DELIVERY_KEY = "nudge:last_delivery_time"


class NudgeArchive:
    def __init__(self, r: redis.Redis):
        self.r = r

    def archive(self, nudge: Nudge) -> bool:
        """Store a nudge once. Returns False if this id was already archived."""
        key = f"{ARCHIVE_PREFIX}{nudge.nudge_id}"
        if not self.r.hsetnx(key, "nudge_id", nudge.nudge_id):
            logger.debug("Nudge %s already archived", nudge.nudge_id)
            return False

        pipe = self.r.pipeline(transaction=True)
        pipe.hset(key, mapping=nudge.to_dict())
        pipe.lpush(ARCHIVE_INDEX, nudge.nudge_id)
        pipe.execute()
        logger.info("Archived nudge %s (%s)", nudge.nudge_id,
                    nudge.response.value if nudge.response else "no response")
        return True

    def get(self, nudge_id: str) -> Optional[Nudge]:
        data = self.r.hgetall(f"{ARCHIVE_PREFIX}{nudge_id}")
        if not data or "content" not in data:
            return None
        return Nudge.from_dict(data)

    def recent(self, limit: int = 20) -> list[Nudge]:
        ids = self.r.lrange(ARCHIVE_INDEX, 0, limit - 1)
        nudges = []
        for nudge_id in ids:
            nudge = self.get(nudge_id)
            if nudge is not None:
                nudges.append(nudge)
        return nudges

    def count(self) -> int:
        return self.r.llen(ARCHIVE_INDEX)

    # -- Delivery clock --

    def last_delivery_time(self) -> Optional[datetime]:
        raw = self.r.get(LAST_DELIVERY_KEY)
        if not raw:
            return None
        value = datetime.fromisoformat(raw)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def set_last_delivery_time(self, when: datetime) -> None:
        self.r.set(LAST_DELIVERY_KEY, when.isoformat())
