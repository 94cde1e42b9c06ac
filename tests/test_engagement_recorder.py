"""Tests for sthealth.agents.engagement_recorder — typed recording API."""

import json
import pytest
import httpx
import redis
from unittest.mock import patch

from sthealth.agents.engagement_recorder import EngagementRecorder
from sthealth.models.engagement import AppContext, EngagementEvent, InteractionType
from sthealth.services.backend_client import BackendClient


@pytest.fixture
def recorder(store, clock):
    return EngagementRecorder(store, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# Generic recording
# ═══════════════════════════════════════════════════════════════════════════


class TestRecordInteraction:
    def test_event_is_stored_with_clock_timestamp(self, recorder, store, clock):
        """Recorded events are timestamped by the injected clock and persisted."""
        ev = recorder.record_interaction(AppContext.ATLAS, "neural_pathway_a", InteractionType.EXPLORE,
                                         duration=12.0, intensity=0.7)
        assert ev.timestamp == clock.now
        assert store.get(ev.event_id) == ev

    def test_string_values_accepted(self, recorder):
        """Raw strings are coerced to the context and interaction enums."""
        ev = recorder.record_interaction("cards", "hypothesis_1", "hesitate")
        assert ev.context is AppContext.CARDS
        assert ev.interaction_type is InteractionType.HESITATE

    def test_unknown_context_rejected(self, recorder, store):
        """Unknown context raises and nothing is stored."""
        with pytest.raises(ValueError):
            recorder.record_interaction("settings", "x", InteractionType.VIEW)
        assert store.count() == 0

    def test_out_of_range_values_are_clamped(self, recorder):
        """Negative duration → 0, intensity above 1 → 1."""
        ev = recorder.record_interaction(AppContext.CARDS, "x", InteractionType.VIEW,
                                         duration=-3.0, intensity=1.7)
        assert ev.duration == 0.0
        assert ev.intensity == 1.0

    def test_storage_failure_does_not_raise(self, recorder, store):
        """Redis failure queues the event instead of raising."""
        with patch.object(EngagementEvent, "to_redis", side_effect=redis.ConnectionError("down")):
            recorder.record_interaction(AppContext.CARDS, "x", InteractionType.VIEW)
        assert store.pending_count == 1


# ═══════════════════════════════════════════════════════════════════════════
# Focus sessions
# ═══════════════════════════════════════════════════════════════════════════


class TestFocusSessions:
    def test_duration_from_start_to_end(self, recorder, clock):
        """Focus duration is the clock delta between start and end."""
        recorder.start_focus("hypothesis_work", AppContext.CARDS)
        assert recorder.open_focus_sessions == ["hypothesis_work"]
        clock.advance(seconds=42)
        ev = recorder.end_focus("hypothesis_work", AppContext.CARDS, intensity=0.8)
        assert ev.interaction_type is InteractionType.FOCUS
        assert ev.duration == 42.0
        assert ev.intensity == 0.8
        assert recorder.open_focus_sessions == []

    def test_end_without_start_is_noop(self, recorder, store):
        """Ending a session that never started records nothing."""
        assert recorder.end_focus("hypothesis_work", AppContext.CARDS) is None
        assert store.count() == 0

    def test_restart_resets_start_time(self, recorder, clock):
        """Starting the same item twice restarts its timer."""
        recorder.start_focus("a", AppContext.ATLAS)
        clock.advance(seconds=30)
        recorder.start_focus("a", AppContext.ATLAS)
        clock.advance(seconds=5)
        assert recorder.end_focus("a", AppContext.ATLAS).duration == 5.0

    def test_sessions_are_per_item(self, recorder, clock):
        recorder.start_focus("a", AppContext.ATLAS)
        clock.advance(seconds=10)
        recorder.start_focus("b", AppContext.ATLAS)
        clock.advance(seconds=10)
        assert recorder.end_focus("a", AppContext.ATLAS).duration == 20.0
        assert recorder.end_focus("b", AppContext.ATLAS).duration == 10.0


# ═══════════════════════════════════════════════════════════════════════════
# Convenience recorders
# ═══════════════════════════════════════════════════════════════════════════


class TestConvenienceRecorders:
    def test_card_hesitation(self, recorder):
        """Hesitation intensity is seconds / 10."""
        ev = recorder.record_card_hesitation("work", 4.0)
        assert ev.item_identifier == "hypothesis_work"
        assert ev.interaction_type is InteractionType.HESITATE
        assert ev.duration == 4.0
        assert ev.intensity == pytest.approx(0.4)

    def test_card_hesitation_saturates(self, recorder):
        assert recorder.record_card_hesitation("work", 25.0).intensity == 1.0

    def test_card_reconsideration(self, recorder):
        """Reconsideration intensity is rereads / 3, count kept in metadata."""
        ev = recorder.record_card_reconsideration("work", 2)
        assert ev.interaction_type is InteractionType.RECONSIDER
        assert ev.intensity == pytest.approx(2 / 3)
        assert ev.metadata == {"reread_count": "2"}

    def test_workshop_tool_completed(self, recorder):
        """Completed tool → complete interaction at full intensity."""
        ev = recorder.track_workshop_tool_usage("reframe", 120.0, completed=True)
        assert ev.context is AppContext.WORKSHOP
        assert ev.item_identifier == "workshop_tool_reframe"
        assert ev.interaction_type is InteractionType.COMPLETE
        assert ev.intensity == 1.0

    def test_workshop_tool_abandoned(self, recorder):
        """Abandoned tool → abandon interaction at 0.3."""
        ev = recorder.track_workshop_tool_usage("reframe", 3.0, completed=False)
        assert ev.interaction_type is InteractionType.ABANDON
        assert ev.intensity == pytest.approx(0.3)

    def test_neural_pathway(self, recorder):
        """Exploration depth 3 → intensity 0.6."""
        ev = recorder.track_neural_pathway_exploration("self_worth", 60.0, depth=3)
        assert ev.item_identifier == "neural_pathway_self_worth"
        assert ev.intensity == pytest.approx(0.6)
        assert ev.metadata == {"exploration_depth": "3"}

    def test_reflection_entry(self, recorder):
        """Reflection entries saturate at 150 words and stringify extra metadata."""
        ev = recorder.track_reflection_entry("r1", word_count=150, duration=300.0,
                                             input_method="voice",
                                             extra={"theme": "family", "sentiment": 0.4})
        assert ev.context is AppContext.REFLECTION
        assert ev.item_identifier == "reflection_r1"
        assert ev.intensity == 1.0
        assert ev.metadata == {"word_count": "150", "input_method": "voice",
                               "theme": "family", "sentiment": "0.4"}

    def test_clear_all(self, recorder, store):
        """Reset drops stored events and open focus sessions."""
        recorder.start_focus("a", AppContext.ATLAS)
        recorder.record_card_hesitation("work", 2.0)
        recorder.clear_all()
        assert store.count() == 0
        assert recorder.open_focus_sessions == []


# ═══════════════════════════════════════════════════════════════════════════
# Backend mirroring
# ═══════════════════════════════════════════════════════════════════════════


class TestBackendMirroring:
    async def test_event_submitted_as_data_point(self, store, clock):
        """Each event is mirrored as an engagement_event data point."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"ok": True})

        backend = BackendClient(base_url="http://backend.test",
                                transport=httpx.MockTransport(handler))
        recorder = EngagementRecorder(store, backend=backend, clock=clock)
        ev = recorder.record_card_hesitation("work", 5.0)
        await backend.drain()

        assert len(seen) == 1
        assert seen[0]["data_type"] == "engagement_event"
        assert seen[0]["source"] == "ios_app"
        assert seen[0]["payload"]["event_id"] == ev.event_id

    async def test_backend_failure_does_not_affect_store(self, store, clock):
        """A failing backend leaves the local write intact."""
        backend = BackendClient(
            base_url="http://backend.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        recorder = EngagementRecorder(store, backend=backend, clock=clock)
        ev = recorder.record_card_hesitation("work", 5.0)
        await backend.drain()
        assert store.get(ev.event_id) == ev
