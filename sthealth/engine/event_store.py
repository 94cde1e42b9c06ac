"""Redis-backed append-only log of engagement events.

Layout:
  engagement:event:<id>   hash with the flattened event
  engagement:timeline     sorted set, member = event id, score = epoch seconds

Each event hash and its timeline entry are written in one MULTI pipeline,
so a timeline read always resolves to a consistent prefix of the log.
Writes that fail are buffered in-process and replayed in order.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Optional

import redis

from sthealth.config.settings import REDIS_URL
from sthealth.models.engagement import (
    EVENT_PREFIX,
    TIMELINE_KEY,
    AppContext,
    EngagementEvent,
    InteractionType,
)

logger = logging.getLogger(__name__)

# Written by the nudge scheduler; never counted as user concepts
SYSTEM_ITEM_PREFIX = "nudge_"

MAX_PENDING_EVENTS = 1000  # oldest buffered writes drop first beyond this


def _get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


@dataclass
class EventQuery:
    """Filter applied to the timeline. All fields are optional and combine with AND."""
    concept: Optional[str] = None
    contexts: Optional[set[AppContext]] = None
    interaction_types: Optional[set[InteractionType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    last_unique_days: Optional[int] = None

    @classmethod
    def last_days(cls, days: int, now: datetime, **kwargs) -> EventQuery:
        return cls(since=now - timedelta(days=days), **kwargs)


def is_system_event(event: EngagementEvent) -> bool:
    return event.item_identifier.startswith(SYSTEM_ITEM_PREFIX)


def user_events(events: Iterable[EngagementEvent]) -> list[EngagementEvent]:
    return [e for e in events if not is_system_event(e)]


def event_matches_concept(event: EngagementEvent, concept: str) -> bool:
    """Case-insensitive substring match on the item identifier or any metadata value."""
    needle = concept.lower()
    if needle in event.item_identifier.lower():
        return True
    if event.metadata:
        return any(needle in str(v).lower() for v in event.metadata.values())
    return False


def filter_events(
    events: Iterable[EngagementEvent],
    query: EventQuery,
    tz: tzinfo = timezone.utc,
) -> list[EngagementEvent]:
    """Apply an EventQuery to an in-memory sequence (ascending timestamp order kept)."""
    result = []
    for event in events:
        if query.since and event.timestamp < query.since:
            continue
        if query.until and event.timestamp > query.until:
            continue
        if query.contexts and event.context not in query.contexts:
            continue
        if query.interaction_types and event.interaction_type not in query.interaction_types:
            continue
        if query.concept and not event_matches_concept(event, query.concept):
            continue
        result.append(event)

    if query.last_unique_days:
        days = sorted({e.timestamp.astimezone(tz).date() for e in result}, reverse=True)
        keep = set(days[: query.last_unique_days])
        result = [e for e in result if e.timestamp.astimezone(tz).date() in keep]

    return result


class EventStore:
    """Append-only engagement log. Safe to share between concurrent callers."""

    def __init__(
        self,
        r: redis.Redis | None = None,
        tz: tzinfo = timezone.utc,
        max_pending: int = MAX_PENDING_EVENTS,
    ):
        self._r = r
        self.tz = tz
        self._pending: deque[EngagementEvent] = deque(maxlen=max_pending)
        self._pending_lock = threading.Lock()

    @property
    def r(self) -> redis.Redis:
        if self._r is None:
            self._r = _get_redis()
        return self._r

    # -- Writes --

    def record(self, event: EngagementEvent) -> None:
        """Append an event. Never raises; failed writes are queued for replay."""
        if self._pending:
            self.retry_pending()

        with self._pending_lock:
            if self._pending:
                # Keep ordering: nothing jumps ahead of an unflushed event
                self._buffer_locked(event)
                logger.warning("Event %s queued behind %d pending writes",
                               event.event_id, len(self._pending) - 1)
                return

        try:
            event.to_redis(self.r)
        except redis.RedisError as exc:
            with self._pending_lock:
                self._buffer_locked(event)
            logger.warning("Event store write failed, queued for retry: %s", exc)

    def _buffer_locked(self, event: EngagementEvent) -> None:
        if len(self._pending) == self._pending.maxlen:
            logger.warning("Pending buffer full (%d), dropping oldest event %s",
                           self._pending.maxlen, self._pending[0].event_id)
        self._pending.append(event)

    def retry_pending(self) -> int:
        """Replay buffered writes in order. Returns the number flushed."""
        flushed = 0
        with self._pending_lock:
            while self._pending:
                event = self._pending[0]
                try:
                    event.to_redis(self.r)
                except redis.RedisError as exc:
                    logger.warning("Pending event replay failed (%d left): %s",
                                   len(self._pending), exc)
                    break
                self._pending.popleft()
                flushed += 1
        if flushed:
            logger.info("Replayed %d pending engagement events", flushed)
        return flushed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear_all(self) -> None:
        """Account reset: drop every stored event and the pending buffer."""
        ids = self.r.zrange(TIMELINE_KEY, 0, -1)
        pipe = self.r.pipeline(transaction=True)
        for event_id in ids:
            pipe.delete(f"{EVENT_PREFIX}{event_id}")
        pipe.delete(TIMELINE_KEY)
        pipe.execute()
        with self._pending_lock:
            self._pending.clear()
        logger.info("Cleared %d engagement events", len(ids))

    # -- Reads --

    def query(self, query: EventQuery | None = None) -> list[EngagementEvent]:
        """Return matching events in ascending timestamp order.

        Raises redis.RedisError on read failure; callers building snapshots
        treat that as an aborted cycle.
        """
        query = query or EventQuery()
        lo = query.since.timestamp() if query.since else "-inf"
        hi = query.until.timestamp() if query.until else "+inf"
        ids = self.r.zrangebyscore(TIMELINE_KEY, lo, hi)
        if not ids:
            return []

        pipe = self.r.pipeline(transaction=False)
        for event_id in ids:
            pipe.hgetall(f"{EVENT_PREFIX}{event_id}")
        rows = pipe.execute()

        events = []
        for row in rows:
            if not row:
                continue
            decoded = {k.decode() if isinstance(k, bytes) else k:
                       v.decode() if isinstance(v, bytes) else v
                       for k, v in row.items()}
            events.append(EngagementEvent.from_dict(decoded))
        return filter_events(events, query, self.tz)

    def snapshot(self) -> list[EngagementEvent]:
        return self.query()

    def count(self) -> int:
        return self.r.zcard(TIMELINE_KEY)

    def get(self, event_id: str) -> Optional[EngagementEvent]:
        return EngagementEvent.from_redis(self.r, event_id)
