"""Shared test fixtures for the Sthealth test suite."""

import pytest
import fakeredis
from datetime import datetime, timedelta, timezone

from sthealth.engine.event_store import EventStore
from sthealth.models.engagement import AppContext, EngagementEvent, InteractionType


# ── Redis ────────────────────────────────────────────────────────────────

@pytest.fixture
def r():
    """Fresh fakeredis instance per test (decode_responses=True like production)."""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(r):
    return EventStore(r)


# ── Time Freezing ───────────────────────────────────────────────────────

@pytest.fixture
def frozen_now():
    """Return a fixed 'now' for deterministic tests.

    Default: 2026-02-15T09:30:00Z, inside the default 9-10am receptivity window.
    """
    return datetime(2026, 2, 15, 9, 30, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock; tests advance it explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock(frozen_now):
    return FakeClock(frozen_now)


# ── Event Factories ─────────────────────────────────────────────────────

@pytest.fixture
def make_event(frozen_now):
    """Factory fixture that creates EngagementEvents with sensible defaults.

    Usage:
        ev = make_event(item="hypothesis_work", interaction=InteractionType.HESITATE,
                        days_ago=2, duration=30)
    """
    def _factory(
        item: str = "hypothesis_work",
        interaction: InteractionType = InteractionType.VIEW,
        context: AppContext = AppContext.CARDS,
        duration: float = 10.0,
        intensity: float = 0.5,
        metadata: dict | None = None,
        days_ago: float = 0,
        hours_ago: float = 0,
        at: datetime | None = None,
    ) -> EngagementEvent:
        timestamp = at or frozen_now - timedelta(days=days_ago, hours=hours_ago)
        return EngagementEvent(
            context=context,
            item_identifier=item,
            interaction_type=interaction,
            duration=duration,
            intensity=intensity,
            metadata=metadata,
            timestamp=timestamp,
        )

    return _factory
