"""Psychological snapshots rebuilt on every scheduler evaluation."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_RECEPTIVITY_WINDOWS: list[int] = [9, 10, 19, 20]  # 9-10am, 7-8pm


@dataclass
class SignificanceScore:
    concept: str
    attention_score: float       # time/focus given to the concept
    emotional_intensity: float   # hesitations and reconsiderations
    consistency_score: float     # distinct days returned to it
    avoidance_score: float       # quick abandons
    overall_significance: float
    last_seen: float = 0.0       # epoch of most recent matching event

    def to_dict(self) -> dict:
        return {
            "concept": self.concept,
            "attention_score": round(self.attention_score, 4),
            "emotional_intensity": round(self.emotional_intensity, 4),
            "consistency_score": round(self.consistency_score, 4),
            "avoidance_score": round(self.avoidance_score, 4),
            "overall_significance": round(self.overall_significance, 4),
        }


@dataclass
class PsychologicalProfile:
    reflection_patterns: dict[str, float] = field(default_factory=dict)   # concept -> share
    growth_opportunities: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    avoidance_topics: list[str] = field(default_factory=list)
    optimal_receptivity_windows: list[int] = field(
        default_factory=lambda: list(DEFAULT_RECEPTIVITY_WINDOWS)
    )
    current_life_narrative_chapter: str = "getting_started"
    emotional_vocabulary_complexity: float = 0.0
    stress_indicators: list[str] = field(default_factory=list)

    @property
    def top_pattern(self) -> str:
        if not self.reflection_patterns:
            return "general"
        return max(self.reflection_patterns.items(), key=lambda kv: kv[1])[0]


@dataclass
class RecentBehaviorAnalysis:
    last_reflection_sentiment: float = 0.0   # -1 to 1
    engagement_depth: float = 0.5            # 0 to 1
    receptivity_level: float = 0.5           # 0 to 1
    time_spent_in_app: float = 0.0           # seconds, last 24h
    workshop_participation: float = 0.0
    card_response_patterns: dict[str, int] = field(default_factory=dict)
    emotional_state: str = "reflective"
