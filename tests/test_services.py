"""Tests for sthealth.services — backend client, analytics, push, archive."""

import json
import pytest
import httpx
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sthealth.models.messages import AnalyticsEventData, DataPointCreate, PushNotificationPayload
from sthealth.models.nudge import Nudge, NudgeResponse, NudgeType, PsychologicalFramework
from sthealth.services.analytics import MAX_QUEUE, AnalyticsSink
from sthealth.services.backend_client import BackendClient
from sthealth.services.nudge_archive import LAST_DELIVERY_KEY, NudgeArchive
from sthealth.services.push_notifications import (
    PUSH_CHANNEL,
    SCHEDULED_KEY,
    PushNotifier,
    next_delivery_time,
    next_occurrence,
)


class RecordingBackend:
    """httpx MockTransport handler that records posted JSON bodies."""

    def __init__(self, status: int = 201):
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={})

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(req.content) for req in self.requests]

    def client(self, **kwargs) -> BackendClient:
        return BackendClient(base_url="http://backend.test",
                             transport=httpx.MockTransport(self), **kwargs)


def _nudge(**kwargs) -> Nudge:
    return Nudge("Notice the story you're telling yourself right now...",
                 NudgeType.PATTERN_INTERRUPTION, PsychologicalFramework.CBT, **kwargs)


# ═══════════════════════════════════════════════════════════════════════════
# Backend client
# ═══════════════════════════════════════════════════════════════════════════


class TestBackendClient:
    async def test_posts_each_point(self):
        """Each point is POSTed with the bearer token."""
        backend = RecordingBackend()
        client = backend.client(api_token="secret")
        ok = await client.submit_data_points([
            DataPointCreate(data_type="analytics", source="app_tracking", payload={"n": 1}),
            DataPointCreate(data_type="analytics", source="app_tracking", payload={"n": 2}),
        ])
        assert ok
        assert [b["payload"]["n"] for b in backend.bodies] == [1, 2]
        assert backend.requests[0].url.path == "/data-points/"
        assert backend.requests[0].headers["Authorization"] == "Bearer secret"

    async def test_http_error_raises_from_batch_submit(self):
        """Batch submit raises on HTTP errors."""
        client = RecordingBackend(status=500).client()
        with pytest.raises(httpx.HTTPStatusError):
            await client.submit_data_points([DataPointCreate(data_type="x", source="y")])

    async def test_submit_swallows_errors(self):
        """Single submit logs and returns False."""
        client = RecordingBackend(status=503).client()
        assert await client.submit("nudge_delivery", "ios_nudge_engine", {}) is False

    async def test_disabled_client_sends_nothing(self):
        """Empty base URL → disabled, nothing sent."""
        client = BackendClient(base_url="")
        assert not client.enabled
        assert await client.submit("analytics", "app_tracking", {}) is True

    async def test_background_submission_and_drain(self):
        """drain() waits for background submissions."""
        backend = RecordingBackend()
        client = backend.client()
        client.submit_in_background("nudge_response", "ios_nudge_engine", {"nudge_id": "n1"})
        await client.drain()
        assert backend.bodies[0]["data_type"] == "nudge_response"

    def test_background_submission_without_loop_is_skipped(self):
        """No running loop → submission skipped."""
        backend = RecordingBackend()
        backend.client().submit_in_background("analytics", "app_tracking", {})
        assert backend.requests == []


# ═══════════════════════════════════════════════════════════════════════════
# Analytics
# ═══════════════════════════════════════════════════════════════════════════


class TestAnalyticsSink:
    async def test_track_adds_common_properties(self):
        """Tracked events carry session id, timestamp and platform."""
        backend = RecordingBackend()
        sink = AnalyticsSink(backend.client(), batch_size=10)
        sink.track("nudge_shown", {"nudge_type": "values_alignment"})
        assert await sink.flush() == 1

        body = backend.bodies[0]
        assert body["data_type"] == "analytics"
        assert body["source"] == "app_tracking"
        props = body["payload"]["properties"]
        assert props["nudge_type"] == "values_alignment"
        assert props["session_id"] == sink.session_id
        assert props["platform"] == "server"
        assert "timestamp" in props

    async def test_flush_sends_at_most_one_batch(self):
        """One flush sends one batch."""
        backend = RecordingBackend()
        sink = AnalyticsSink(backend.client(), batch_size=3)
        for i in range(5):
            sink._queue.append(_analytics_event(i))
        assert await sink.flush() == 3
        assert sink.queued == 2

    async def test_failed_batch_requeued_in_order(self):
        """A failed batch goes back to the head of the queue."""
        sink = AnalyticsSink(RecordingBackend(status=500).client(), batch_size=2)
        for i in range(3):
            sink._queue.append(_analytics_event(i))
        assert await sink.flush() == 0
        assert [e.event_name for e in sink._queue] == ["e0", "e1", "e2"]

    async def test_disabled_backend_keeps_queue(self):
        sink = AnalyticsSink(BackendClient(base_url=""))
        sink.track("session_started")
        assert await sink.flush() == 0
        assert sink.queued == 1

    async def test_batch_size_triggers_flush(self):
        """Reaching the batch size schedules a flush."""
        backend = RecordingBackend()
        sink = AnalyticsSink(backend.client(), batch_size=2)
        sink.track("a")
        sink.track("b")
        await sink._pending_flush
        assert len(backend.requests) == 2
        assert sink.queued == 0

    def test_queue_is_bounded(self):
        """Oldest events drop first past MAX_QUEUE."""
        sink = AnalyticsSink(BackendClient(base_url=""), batch_size=MAX_QUEUE + 10)
        for i in range(MAX_QUEUE + 5):
            sink.track(f"e{i}")
        assert sink.queued == MAX_QUEUE
        assert sink._queue[0].event_name == "e5"

    async def test_session_lifecycle(self):
        """Session start and end are tracked with a duration."""
        backend = RecordingBackend()
        sink = AnalyticsSink(backend.client(), batch_size=10)
        sink.start_session()
        sink.end_session()
        await sink._pending_flush
        names = [b["payload"]["event_name"] for b in backend.bodies]
        assert names == ["session_started", "session_ended"]
        assert "duration_seconds" in backend.bodies[1]["payload"]["properties"]

    async def test_stop_flushes_remaining(self):
        """stop() flushes what is queued."""
        backend = RecordingBackend()
        sink = AnalyticsSink(backend.client(), batch_size=10, flush_interval=3600)
        sink.start()
        sink.track("nudge_acknowledged")
        await sink.stop()
        assert len(backend.requests) == 1


def _analytics_event(i: int):
    return AnalyticsEventData(event_name=f"e{i}", timestamp="2026-02-15T09:30:00+00:00")


# ═══════════════════════════════════════════════════════════════════════════
# Push notifications
# ═══════════════════════════════════════════════════════════════════════════


class TestNextDeliveryTime:
    def test_next_occurrence_today(self, frozen_now):
        assert next_occurrence(19, frozen_now) == frozen_now.replace(hour=19, minute=0)

    def test_next_occurrence_rolls_to_tomorrow(self, frozen_now):
        """A past hour rolls to tomorrow."""
        expected = (frozen_now + timedelta(days=1)).replace(hour=9, minute=0)
        assert next_occurrence(9, frozen_now) == expected

    def test_requires_more_than_an_hour_of_lead(self, frozen_now):
        """Hours under an hour away are skipped."""
        # 10:00 is only 30 minutes away; 19:00 qualifies
        assert next_delivery_time([10, 19], frozen_now) == frozen_now.replace(hour=19, minute=0)

    def test_exactly_one_hour_is_not_enough(self, frozen_now):
        """Exactly one hour of lead → None."""
        now = frozen_now.replace(minute=0)
        assert next_delivery_time([10], now) is None

    def test_zone_aware(self, frozen_now):
        """Delivery hours are wall-clock hours in the user's zone."""
        tz = ZoneInfo("America/New_York")
        when = next_delivery_time([19], frozen_now, tz)
        assert when.hour == 19
        assert when.utcoffset() == timedelta(hours=-5)


class TestPushNotifier:
    def test_schedule_stores_and_publishes(self, r, frozen_now):
        """Push copy is published and kept in the scheduled set."""
        pubsub = r.pubsub()
        pubsub.subscribe(PUSH_CHANNEL)
        pubsub.get_message(timeout=0.1)

        nudge = _nudge()
        payload = PushNotifier(r).schedule(nudge, [9, 10, 19, 20], now=frozen_now)
        assert payload.title == "A gentle thought"
        assert payload.category == "NUDGE"
        assert payload.body == nudge.content
        # First listed hour wins; 09:00 tomorrow is well over an hour away
        tomorrow_nine = (frozen_now + timedelta(days=1)).replace(hour=9, minute=0)
        assert payload.deliver_at == tomorrow_nine.isoformat()

        message = pubsub.get_message(timeout=0.1)
        assert PushNotificationPayload.model_validate_json(message["data"]) == payload
        assert r.zcard(SCHEDULED_KEY) == 1
        assert PushNotifier(r).scheduled() == [payload]

    def test_schedule_skips_hour_under_an_hour_away(self, r, frozen_now):
        """10:00 is only 30 minutes out at 09:30, so 19:00 is used."""
        payload = PushNotifier(r).schedule(_nudge(), [10, 19], now=frozen_now)
        assert payload.deliver_at == frozen_now.replace(hour=19, minute=0).isoformat()

    def test_disabled_is_noop(self, r, frozen_now):
        """Disabled notifier stores nothing."""
        assert PushNotifier(r, enabled=False).schedule(_nudge(), [19], now=frozen_now) is None
        assert r.zcard(SCHEDULED_KEY) == 0

    def test_no_qualifying_hour(self, r, frozen_now):
        assert PushNotifier(r).schedule(_nudge(), [], now=frozen_now) is None


# ═══════════════════════════════════════════════════════════════════════════
# Archive
# ═══════════════════════════════════════════════════════════════════════════


class TestNudgeArchive:
    def test_archive_round_trip(self, r, frozen_now):
        """Archived nudge reads back unchanged."""
        nudge = _nudge(delivered_at=frozen_now, response=NudgeResponse.ACKNOWLEDGED,
                       response_timestamp=frozen_now + timedelta(seconds=20))
        archive = NudgeArchive(r)
        assert archive.archive(nudge)
        assert archive.get(nudge.nudge_id) == nudge

    def test_archive_is_idempotent(self, r):
        """Archiving the same nudge twice stores it once."""
        nudge = _nudge(response=NudgeResponse.TIMEOUT)
        archive = NudgeArchive(r)
        assert archive.archive(nudge)
        assert not archive.archive(nudge)
        assert archive.count() == 1

    def test_recent_is_newest_first(self, r):
        """recent() lists newest first."""
        archive = NudgeArchive(r)
        first, second = _nudge(), _nudge()
        archive.archive(first)
        archive.archive(second)
        assert [n.nudge_id for n in archive.recent()] == [second.nudge_id, first.nudge_id]
        assert len(archive.recent(limit=1)) == 1

    def test_get_missing(self, r):
        assert NudgeArchive(r).get("missing") is None

    def test_last_delivery_time(self, r, frozen_now):
        """Last delivery time persists in Redis."""
        archive = NudgeArchive(r)
        assert archive.last_delivery_time() is None
        archive.set_last_delivery_time(frozen_now)
        assert archive.last_delivery_time() == frozen_now

    def test_naive_stored_time_read_as_utc(self, r):
        """A naive stored time is read as UTC."""
        r.set(LAST_DELIVERY_KEY, "2026-02-14T09:30:00")
        when = NudgeArchive(r).last_delivery_time()
        assert when == datetime(2026, 2, 14, 9, 30, tzinfo=timezone.utc)
