"""Nudge model — the single mutable-over-time entity owned by the scheduler."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class NudgeType(str, Enum):
    PATTERN_INTERRUPTION = "pattern_interruption"
    VALUES_ALIGNMENT = "values_alignment"
    EMOTIONAL_GRANULARITY = "emotional_granularity"
    GROWTH_OPPORTUNITY = "growth_opportunity"
    GRATITUDE_STRENGTHS = "gratitude_strengths"


class PsychologicalFramework(str, Enum):
    CBT = "CBT"
    DBT = "DBT"
    ACT = "ACT"
    POSITIVE_PSYCHOLOGY = "positive_psychology"
    MINDFULNESS = "mindfulness"


class NudgeResponse(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    IGNORED = "ignored"
    TIMEOUT = "timeout"


class NudgeState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT = "timed_out"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (NudgeState.ACKNOWLEDGED, NudgeState.TIMED_OUT, NudgeState.DISMISSED)


# Deterministic type → framework mapping
FRAMEWORK_FOR_TYPE: dict[NudgeType, PsychologicalFramework] = {
    NudgeType.PATTERN_INTERRUPTION: PsychologicalFramework.CBT,
    NudgeType.VALUES_ALIGNMENT: PsychologicalFramework.ACT,
    NudgeType.EMOTIONAL_GRANULARITY: PsychologicalFramework.DBT,
    NudgeType.GROWTH_OPPORTUNITY: PsychologicalFramework.POSITIVE_PSYCHOLOGY,
    NudgeType.GRATITUDE_STRENGTHS: PsychologicalFramework.POSITIVE_PSYCHOLOGY,
}


def _iso(dt: Optional[datetime]) -> str:
    return dt.isoformat() if dt else ""


def _parse_iso(value: str) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Nudge:
    content: str
    type: NudgeType
    framework: PsychologicalFramework
    delivery_context: dict = field(default_factory=dict)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    nudge_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    delivered_at: Optional[datetime] = None
    response: Optional[NudgeResponse] = None
    response_timestamp: Optional[datetime] = None
    effectiveness_score: Optional[float] = None

    @property
    def item_identifier(self) -> str:
        return f"nudge_{self.nudge_id}"

    @property
    def response_time_seconds(self) -> float:
        if self.response_timestamp is None or self.delivered_at is None:
            return 0.0
        return (self.response_timestamp - self.delivered_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "nudge_id": self.nudge_id,
            "content": self.content,
            "type": self.type.value,
            "framework": self.framework.value,
            "delivery_context": json.dumps(self.delivery_context),
            "generated_at": _iso(self.generated_at),
            "delivered_at": _iso(self.delivered_at),
            "response": self.response.value if self.response else "",
            "response_timestamp": _iso(self.response_timestamp),
            "effectiveness_score": (
                repr(self.effectiveness_score) if self.effectiveness_score is not None else ""
            ),
        }

    def to_payload(self) -> dict:
        """JSON-friendly view for the host surface."""
        return {
            "nudge_id": self.nudge_id,
            "content": self.content,
            "type": self.type.value,
            "framework": self.framework.value,
            "delivery_context": dict(self.delivery_context),
            "generated_at": _iso(self.generated_at),
            "delivered_at": _iso(self.delivered_at) or None,
            "response": self.response.value if self.response else None,
            "response_timestamp": _iso(self.response_timestamp) or None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Nudge:
        raw_ctx = data.get("delivery_context") or "{}"
        score = data.get("effectiveness_score") or ""
        return cls(
            nudge_id=data["nudge_id"],
            content=data["content"],
            type=NudgeType(data["type"]),
            framework=PsychologicalFramework(data["framework"]),
            delivery_context=json.loads(raw_ctx),
            generated_at=datetime.fromisoformat(data["generated_at"]),
            delivered_at=_parse_iso(data.get("delivered_at", "")),
            response=NudgeResponse(data["response"]) if data.get("response") else None,
            response_timestamp=_parse_iso(data.get("response_timestamp", "")),
            effectiveness_score=float(score) if score else None,
        )
