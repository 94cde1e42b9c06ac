"""Receptivity gate — pure function, no I/O.

Decides whether "now" is a safe and welcome moment to surface a nudge.
Used by the nudge scheduler and exposed to the host for diagnostics.
"""

from __future__ import annotations

from datetime import datetime

from sthealth.models.profile import PsychologicalProfile, RecentBehaviorAnalysis

# Veto thresholds (checked in order, first veto wins)
CRISIS_SENTIMENT_THRESHOLD = -0.7
MIN_ENGAGEMENT_DEPTH = 0.3

# Receptivity above this is enough on its own
HIGH_RECEPTIVITY_THRESHOLD = 0.6


def receptivity_verdict(
    profile: PsychologicalProfile,
    behavior: RecentBehaviorAnalysis,
    now: datetime,
) -> tuple[bool, str]:
    """Return (receptive, reason) so callers can log why a cycle stopped."""
    if behavior.last_reflection_sentiment < CRISIS_SENTIMENT_THRESHOLD:
        return False, "crisis_guard"

    if behavior.engagement_depth < MIN_ENGAGEMENT_DEPTH:
        return False, "disengaging"

    if behavior.receptivity_level > HIGH_RECEPTIVITY_THRESHOLD:
        return True, "high_receptivity"

    # `now` is expected in the user's zone; hours are compared as-is
    if now.hour in profile.optimal_receptivity_windows:
        return True, "optimal_window"

    return False, "outside_window"


def is_receptive(
    profile: PsychologicalProfile,
    behavior: RecentBehaviorAnalysis,
    now: datetime,
) -> bool:
    return receptivity_verdict(profile, behavior, now)[0]
