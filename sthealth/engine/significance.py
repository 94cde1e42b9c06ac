"""Psychological significance scoring — pure functions over event lists.

Four factors per concept, each clamped to [0, 1] before combination:

  attention   = min(1, total_duration / 300s) * mean_intensity
  emotional   = min(1, count(hesitate | reconsider) / 3)
  consistency = min(1, distinct_calendar_days / 7)
  avoidance   = min(1, count(abandon with duration < 5s) / 3)

  overall = 0.4 * attention + 0.3 * emotional + 0.2 * consistency + 0.1 * avoidance

SignificanceScorer binds these to an EventStore snapshot, minus the
scheduler's own nudge_ events, for callers that want "current" answers.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Sequence

from sthealth.engine.event_store import EventStore, event_matches_concept, user_events
from sthealth.models.engagement import AppContext, EngagementEvent, InteractionType
from sthealth.models.profile import SignificanceScore

# Known item identifier prefixes stripped to get the bare concept key
CONCEPT_PREFIXES: tuple[str, ...] = ("hypothesis_", "neural_pathway_", "workshop_tool_")

ATTENTION_SATURATION_SECONDS = 300.0   # 5 minutes = max attention
EMOTIONAL_SATURATION_COUNT = 3.0
CONSISTENCY_SATURATION_DAYS = 7.0      # 7 days = max consistency
AVOIDANCE_SATURATION_COUNT = 3.0
QUICK_ABANDON_SECONDS = 5.0

WEIGHT_ATTENTION = 0.4
WEIGHT_EMOTIONAL = 0.3
WEIGHT_CONSISTENCY = 0.2
WEIGHT_AVOIDANCE = 0.1

DIVERGENCE_RATIO = 1.5
SPIKE_WINDOW_DAYS = 3
DEFAULT_SPIKE_THRESHOLD = 2.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def extract_concept(item_identifier: str) -> str:
    """Strip a known prefix; unprefixed identifiers are concepts themselves."""
    for prefix in CONCEPT_PREFIXES:
        if item_identifier.startswith(prefix):
            return item_identifier[len(prefix):]
    return item_identifier


def score_concept(
    concept: str,
    events: Sequence[EngagementEvent],
    tz: tzinfo = timezone.utc,
) -> SignificanceScore:
    """Score a concept from the events already selected for it.

    Order-independent: every factor is a sum, count, or set size.
    """
    total_time = sum(e.duration for e in events)
    mean_intensity = sum(e.intensity for e in events) / len(events) if events else 0.0
    attention = _clamp(min(1.0, total_time / ATTENTION_SATURATION_SECONDS) * mean_intensity)

    emotional_count = sum(
        1 for e in events
        if e.interaction_type in (InteractionType.HESITATE, InteractionType.RECONSIDER)
    )
    emotional = _clamp(emotional_count / EMOTIONAL_SATURATION_COUNT)

    unique_days = {e.timestamp.astimezone(tz).date() for e in events}
    consistency = _clamp(len(unique_days) / CONSISTENCY_SATURATION_DAYS)

    abandons = sum(
        1 for e in events
        if e.interaction_type == InteractionType.ABANDON and e.duration < QUICK_ABANDON_SECONDS
    )
    avoidance = _clamp(abandons / AVOIDANCE_SATURATION_COUNT)

    overall = (
        attention * WEIGHT_ATTENTION
        + emotional * WEIGHT_EMOTIONAL
        + consistency * WEIGHT_CONSISTENCY
        + avoidance * WEIGHT_AVOIDANCE
    )

    return SignificanceScore(
        concept=concept,
        attention_score=attention,
        emotional_intensity=emotional,
        consistency_score=consistency,
        avoidance_score=avoidance,
        overall_significance=overall,
        last_seen=max((e.epoch for e in events), default=0.0),
    )


def score_concept_in(
    concept: str,
    events: Iterable[EngagementEvent],
    tz: tzinfo = timezone.utc,
) -> SignificanceScore:
    """Select the events that mention a concept, then score them."""
    relevant = [e for e in events if event_matches_concept(e, concept)]
    return score_concept(concept, relevant, tz)


def top_concepts(
    events: Sequence[EngagementEvent],
    limit: int = 10,
    tz: tzinfo = timezone.utc,
) -> list[SignificanceScore]:
    """Rank every concept seen in the events.

    Sorted by overall significance (desc), ties broken by most recent
    matching event (desc), then by concept name for a stable order.
    """
    concepts = {extract_concept(e.item_identifier) for e in events}
    scores = [score_concept_in(c, events, tz) for c in concepts]
    scores.sort(key=lambda s: s.concept)
    scores.sort(key=lambda s: (s.overall_significance, s.last_seen), reverse=True)
    return scores[:limit]


def has_attention_divergence(events: Iterable[EngagementEvent]) -> bool:
    """True iff workshop+atlas time exceeds 1.5x reflection time."""
    reflection_time = 0.0
    exploration_time = 0.0
    for e in events:
        if e.context == AppContext.REFLECTION:
            reflection_time += e.duration
        elif e.context in (AppContext.WORKSHOP, AppContext.ATLAS):
            exploration_time += e.duration
    return exploration_time > reflection_time * DIVERGENCE_RATIO


def has_engagement_spike(
    events: Sequence[EngagementEvent],
    now: datetime,
    threshold: float = DEFAULT_SPIKE_THRESHOLD,
) -> bool:
    """True iff mean duration over the last 3 days is strictly above threshold x all-time mean."""
    if not events:
        return False
    cutoff = now - timedelta(days=SPIKE_WINDOW_DAYS)
    recent = [e for e in events if e.timestamp > cutoff]
    all_time_avg = sum(e.duration for e in events) / len(events)
    recent_avg = sum(e.duration for e in recent) / len(recent) if recent else 0.0
    return recent_avg > all_time_avg * threshold


class SignificanceScorer:
    """Evaluates the scoring functions over the current EventStore contents."""

    def __init__(self, store: EventStore):
        self.store = store

    def _events(self) -> list[EngagementEvent]:
        return user_events(self.store.snapshot())

    def score_concept(self, concept: str) -> SignificanceScore:
        return score_concept_in(concept, self._events(), self.store.tz)

    def top_concepts(self, limit: int = 10) -> list[SignificanceScore]:
        return top_concepts(self._events(), limit, self.store.tz)

    def has_attention_divergence(self) -> bool:
        return has_attention_divergence(self._events())

    def has_engagement_spike(
        self,
        threshold: float = DEFAULT_SPIKE_THRESHOLD,
        now: datetime | None = None,
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        return has_engagement_spike(self._events(), now, threshold)

    def has_contradictory_evidence(self) -> bool:
        # Stand-in: attention divergence until content-vs-behavior analysis exists
        return self.has_attention_divergence()

    def has_significant_pattern(self) -> bool:
        return any(s.overall_significance > 0.7 for s in self.top_concepts(limit=5))

    def has_avoidance_pattern(self) -> bool:
        return any(s.avoidance_score > 0.6 for s in self.top_concepts(limit=10))

    def diagnostics(self, now: datetime | None = None) -> dict[str, bool]:
        return {
            "attention_divergence": self.has_attention_divergence(),
            "engagement_spike": self.has_engagement_spike(now=now),
            "contradictory_evidence": self.has_contradictory_evidence(),
            "significant_pattern": self.has_significant_pattern(),
            "avoidance_pattern": self.has_avoidance_pattern(),
        }
