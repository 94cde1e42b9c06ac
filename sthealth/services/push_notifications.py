"""Push notifier — schedules an out-of-band copy of a delivered nudge.

The device relay subscribes to the ``nudge:push`` channel; the sorted set
``nudge:push:scheduled`` (score = delivery epoch) lets a relay that was
offline catch up. Everything here is fire-and-forget: a disabled or failing
push is logged and never reaches the scheduler.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional

import redis

from sthealth.config.settings import PUSH_NOTIFICATIONS_ENABLED
from sthealth.models.messages import PushNotificationPayload
from sthealth.models.nudge import Nudge

logger = logging.getLogger(__name__)

PUSH_CHANNEL = "nudge:push"
SCHEDULED_KEY = "nudge:push:scheduled"
PUSH_TITLE = "A gentle thought"
PUSH_CATEGORY = "NUDGE"
MIN_LEAD = timedelta(hours=1)


def next_occurrence(hour: int, now: datetime, tz: tzinfo = timezone.utc) -> datetime:
    """Next wall-clock HH:00 in ``tz`` strictly after ``now``."""
    local = now.astimezone(tz)
    candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate


def next_delivery_time(
    hours: Iterable[int],
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """First optimal hour whose next occurrence is more than an hour away."""
    for hour in hours:
        when = next_occurrence(hour, now, tz)
        if when - now.astimezone(tz) > MIN_LEAD:
            return when
    return None


class PushNotifier:
    def __init__(
        self,
        r: redis.Redis,
        enabled: bool = PUSH_NOTIFICATIONS_ENABLED,
        tz: tzinfo = timezone.utc,
    ):
        self.r = r
        self.enabled = enabled
        self.tz = tz

    def schedule(
        self,
        nudge: Nudge,
        optimal_hours: Iterable[int],
        now: datetime | None = None,
    ) -> Optional[PushNotificationPayload]:
        """Publish the push copy. Returns the payload, or None when skipped."""
        if not self.enabled:
            logger.debug("Push notifications disabled, skipping %s", nudge.nudge_id)
            return None

        now = now or datetime.now(timezone.utc)
        deliver_at = next_delivery_time(optimal_hours, now, self.tz)
        if deliver_at is None:
            logger.debug("No optimal hour far enough ahead for %s", nudge.nudge_id)
            return None

        payload = PushNotificationPayload(
            nudge_id=nudge.nudge_id,
            title=PUSH_TITLE,
            body=nudge.content,
            category=PUSH_CATEGORY,
            deliver_at=deliver_at.isoformat(),
        )
        message = payload.model_dump_json()
        try:
            pipe = self.r.pipeline(transaction=True)
            pipe.zadd(SCHEDULED_KEY, {message: deliver_at.timestamp()})
            pipe.publish(PUSH_CHANNEL, message)
            pipe.execute()
        except redis.RedisError as exc:
            logger.warning("Failed to schedule push for %s: %s", nudge.nudge_id, exc)
            return None

        logger.info("Push copy of %s scheduled for %s", nudge.nudge_id, deliver_at.isoformat())
        return payload

    def scheduled(self, limit: int = 20) -> list[PushNotificationPayload]:
        raw = self.r.zrange(SCHEDULED_KEY, 0, limit - 1)
        return [PushNotificationPayload.model_validate_json(m) for m in raw]
