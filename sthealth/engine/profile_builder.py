"""Profile Builder — psychological snapshots from the engagement log.

Rebuilt on every scheduler evaluation, never persisted as authoritative:

1. PsychologicalProfile (reflection pattern distribution, growth opportunities,
   strengths, avoidance topics, optimal receptivity hours, narrative chapter)
2. RecentBehaviorAnalysis (last reflection sentiment, engagement depth,
   receptivity level, time in app, emotional state)

Events whose item identifier starts with ``nudge_`` are written by the
scheduler itself; they feed response history but never concept statistics.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Sequence

from sthealth.engine.event_store import SYSTEM_ITEM_PREFIX, EventQuery, EventStore, is_system_event
from sthealth.engine.significance import extract_concept, top_concepts
from sthealth.models.engagement import AppContext, EngagementEvent, InteractionType
from sthealth.models.profile import (
    DEFAULT_RECEPTIVITY_WINDOWS,
    PsychologicalProfile,
    RecentBehaviorAnalysis,
)

logger = logging.getLogger(__name__)

# Interactions that signal the user leaned in rather than skimmed
DEEP_INTERACTIONS = frozenset({
    InteractionType.COMPLETE,
    InteractionType.EXPLORE,
    InteractionType.FOCUS,
    InteractionType.REVISIT,
})

RECEPTIVITY_WINDOW_COUNT = 4
ACK_WEIGHT = 2.0
RESPONSE_HISTORY_SIZE = 10
LIST_LIMIT = 5
STRENGTH_MIN_CONSISTENCY = 2.0 / 7.0
EMOTION_VOCABULARY_SATURATION = 10.0
WORKSHOP_SATURATION = 5.0


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def pattern_concept(event: EngagementEvent) -> str:
    """Concept an event counts toward in the reflection pattern distribution."""
    meta = event.metadata or {}
    for key in ("concept", "theme"):
        value = meta.get(key)
        if value:
            return str(value).lower()
    return extract_concept(event.item_identifier)


# ═══════════════════════════════════════════════════════════════════════════
# Sentiment
# ═══════════════════════════════════════════════════════════════════════════

class SentimentAnalyzer:
    """Lightweight lexicon sentiment for reflection text."""

    POSITIVE_WORDS = {
        "calm", "grateful", "hopeful", "proud", "happy", "joy", "joyful",
        "peaceful", "content", "energized", "excited", "confident", "better",
        "good", "great", "love", "loved", "connected", "relieved", "growth",
        "progress", "clarity", "strong", "safe", "rested", "inspired",
    }
    NEGATIVE_WORDS = {
        "anxious", "anxiety", "stressed", "overwhelmed", "sad", "angry",
        "lonely", "afraid", "scared", "ashamed", "guilty", "hopeless",
        "worthless", "exhausted", "tired", "burnout", "stuck", "lost",
        "frustrated", "numb", "worried", "hurt", "empty", "panic", "bad",
        "awful", "terrible", "depressed",
    }

    def analyze(self, text: str) -> dict[str, Any]:
        """Return a score in [-1, 1] with the counts it came from."""
        if not text.strip():
            return {"label": "neutral", "score": 0.0, "word_count": 0}

        words = set(re.findall(r"[a-z']+", text.lower()))
        pos = len(words & self.POSITIVE_WORDS)
        neg = len(words & self.NEGATIVE_WORDS)
        total = pos + neg

        if total == 0:
            score = 0.0
            label = "neutral"
        else:
            score = (pos - neg) / total
            if score > 0.2:
                label = "positive"
            elif score < -0.2:
                label = "negative"
            else:
                label = "neutral"

        return {
            "label": label,
            "score": round(score, 4),
            "positive_count": pos,
            "negative_count": neg,
            "word_count": len(words),
        }

    def score(self, text: str) -> float:
        return self.analyze(text)["score"]


_sentiment = SentimentAnalyzer()


# ═══════════════════════════════════════════════════════════════════════════
# Psychological profile
# ═══════════════════════════════════════════════════════════════════════════

def compute_reflection_patterns(events: Sequence[EngagementEvent]) -> dict[str, float]:
    counts = Counter(pattern_concept(e) for e in events)
    total = sum(counts.values())
    if total == 0:
        return {}
    return {concept: n / total for concept, n in counts.items()}


def compute_receptivity_windows(
    events: Sequence[EngagementEvent],
    tz: tzinfo = timezone.utc,
) -> list[int]:
    """Top hours of deep engagement, acknowledged nudges counted double."""
    hour_scores: dict[int, float] = {h: 0.0 for h in range(24)}
    for e in events:
        if e.interaction_type not in DEEP_INTERACTIONS:
            continue
        weight = e.intensity
        if is_system_event(e):
            # Only completions of nudges reach here, i.e. acknowledgements
            weight *= ACK_WEIGHT
        hour_scores[e.timestamp.astimezone(tz).hour] += weight

    ranked = sorted(hour_scores.items(), key=lambda x: (-x[1], x[0]))
    peak = [h for h, score in ranked[:RECEPTIVITY_WINDOW_COUNT] if score > 0]
    return sorted(peak) if peak else list(DEFAULT_RECEPTIVITY_WINDOWS)


def _emotion_labels(events: Sequence[EngagementEvent]) -> set[str]:
    labels = set()
    for e in events:
        emotion = (e.metadata or {}).get("emotion")
        if emotion:
            labels.add(str(emotion).strip().lower())
    return labels


def build_psychological_profile(
    events: Sequence[EngagementEvent],
    now: datetime,
    tz: tzinfo = timezone.utc,
    window_days: int = 14,
) -> PsychologicalProfile:
    cutoff = now - timedelta(days=window_days)
    windowed = [e for e in events if e.timestamp >= cutoff]
    user_events = [e for e in windowed if not is_system_event(e)]

    patterns = compute_reflection_patterns(user_events)
    scores = top_concepts(user_events, limit=max(len(user_events), 1), tz=tz)

    growth = [s.concept for s in scores if s.emotional_intensity > 0][:LIST_LIMIT]
    strengths = [
        s.concept for s in sorted(
            (s for s in scores
             if s.consistency_score >= STRENGTH_MIN_CONSISTENCY and s.avoidance_score == 0),
            key=lambda s: (s.consistency_score, s.overall_significance),
            reverse=True,
        )
    ][:LIST_LIMIT]
    avoidance = [
        s.concept for s in sorted(
            (s for s in scores if s.avoidance_score > 0),
            key=lambda s: s.avoidance_score,
            reverse=True,
        )
    ][:LIST_LIMIT]

    labels = _emotion_labels(user_events)

    profile = PsychologicalProfile(
        reflection_patterns=patterns,
        growth_opportunities=growth,
        strengths=strengths,
        avoidance_topics=avoidance,
        optimal_receptivity_windows=compute_receptivity_windows(windowed, tz),
        emotional_vocabulary_complexity=min(1.0, len(labels) / EMOTION_VOCABULARY_SATURATION),
        stress_indicators=sorted(labels & SentimentAnalyzer.NEGATIVE_WORDS),
    )
    if patterns:
        profile.current_life_narrative_chapter = f"{profile.top_pattern}_focus"
    return profile


# ═══════════════════════════════════════════════════════════════════════════
# Recent behavior
# ═══════════════════════════════════════════════════════════════════════════

def nudge_outcomes(events: Sequence[EngagementEvent]) -> list[bool]:
    """Terminal nudge outcomes, oldest first; True means acknowledged."""
    outcomes = []
    for e in sorted(events, key=lambda e: e.timestamp):
        if not is_system_event(e):
            continue
        if e.interaction_type == InteractionType.COMPLETE:
            outcomes.append(True)
        elif e.interaction_type == InteractionType.ABANDON:
            outcomes.append(False)
    return outcomes


def last_reflection_sentiment(events: Sequence[EngagementEvent]) -> float:
    reflections = sorted(
        (e for e in events if e.context == AppContext.REFLECTION),
        key=lambda e: e.timestamp,
    )
    for e in reversed(reflections):
        meta = e.metadata or {}
        raw = meta.get("sentiment")
        if raw is not None and raw != "":
            try:
                return _clamp(float(raw), -1.0, 1.0)
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric sentiment %r on %s", raw, e.event_id)
        text = meta.get("text")
        if text:
            return _sentiment.score(str(text))
    return 0.0


def compute_engagement_depth(events: Sequence[EngagementEvent]) -> float:
    if not events:
        return 0.5
    mean_intensity = sum(e.intensity for e in events) / len(events)
    deep_ratio = sum(1 for e in events if e.interaction_type in DEEP_INTERACTIONS) / len(events)
    return _clamp(0.6 * mean_intensity + 0.4 * deep_ratio)


def classify_emotional_state(sentiment: float, depth: float) -> str:
    if sentiment < -0.3:
        return "struggling"
    if sentiment > 0.3 and depth > 0.6:
        return "energized"
    if sentiment > 0.3:
        return "uplifted"
    return "reflective"


def analyze_recent_behavior(
    events: Sequence[EngagementEvent],
    now: datetime,
    window_days: int = 3,
) -> RecentBehaviorAnalysis:
    cutoff = now - timedelta(days=window_days)
    day_cutoff = now - timedelta(hours=24)
    user_events = [e for e in events if not is_system_event(e)]
    recent = [e for e in user_events if e.timestamp >= cutoff]

    sentiment = last_reflection_sentiment(recent)
    depth = compute_engagement_depth(recent)

    history = nudge_outcomes(events)[-RESPONSE_HISTORY_SIZE:]
    ack_rate = sum(history) / len(history) if history else 0.5
    receptivity = _clamp(0.6 * ack_rate + 0.4 * depth)

    card_patterns = Counter(
        e.interaction_type.value for e in recent if e.context == AppContext.CARDS
    )
    workshop_events = sum(1 for e in recent if e.context == AppContext.WORKSHOP)

    return RecentBehaviorAnalysis(
        last_reflection_sentiment=sentiment,
        engagement_depth=depth,
        receptivity_level=receptivity,
        time_spent_in_app=sum(e.duration for e in user_events if e.timestamp >= day_cutoff),
        workshop_participation=min(1.0, workshop_events / WORKSHOP_SATURATION),
        card_response_patterns=dict(card_patterns),
        emotional_state=classify_emotional_state(sentiment, depth),
    )


class ProfileBuilder:
    """Builds both snapshots from one consistent read of the event store."""

    def __init__(
        self,
        store: EventStore,
        profile_window_days: int = 14,
        recent_window_days: int = 3,
        history_window_days: int = 90,
    ):
        self.store = store
        self.profile_window_days = profile_window_days
        self.recent_window_days = recent_window_days
        self.history_window_days = history_window_days

    def build(self, now: datetime) -> tuple[PsychologicalProfile, RecentBehaviorAnalysis]:
        """Raises on store failure; the scheduler treats that as an aborted cycle."""
        events = self.store.query(EventQuery.last_days(
            max(self.profile_window_days, self.recent_window_days), now,
        ))
        # Response history looks past the profile window, within its own bound
        history = self.store.query(EventQuery.last_days(
            self.history_window_days, now, concept=SYSTEM_ITEM_PREFIX,
        ))
        seen = {e.event_id for e in events}
        combined = events + [e for e in history if e.event_id not in seen]

        profile = build_psychological_profile(
            events, now, self.store.tz, self.profile_window_days,
        )
        behavior = analyze_recent_behavior(combined, now, self.recent_window_days)
        logger.debug(
            "Snapshot built from %d events: chapter=%s depth=%.2f receptivity=%.2f",
            len(events), profile.current_life_narrative_chapter,
            behavior.engagement_depth, behavior.receptivity_level,
        )
        return profile, behavior
