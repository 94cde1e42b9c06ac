"""Engagement event model for the significance and nudge engines.

Redis-backed, append-only record of a single user interaction with a
concept, card, or pathway.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import redis

EVENT_PREFIX = "engagement:event:"
TIMELINE_KEY = "engagement:timeline"


class AppContext(str, Enum):
    REFLECTION = "reflection"
    WORKSHOP = "workshop"
    ATLAS = "atlas"
    CARDS = "cards"
    PROFILE = "profile"
    ONBOARDING = "onboarding"


class InteractionType(str, Enum):
    VIEW = "view"
    FOCUS = "focus"
    EXPLORE = "explore"
    HESITATE = "hesitate"
    RECONSIDER = "reconsider"
    ABANDON = "abandon"
    COMPLETE = "complete"
    REVISIT = "revisit"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_event_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class EngagementEvent:
    context: AppContext
    item_identifier: str            # e.g. "hypothesis_123", "neural_pathway_xyz"
    interaction_type: InteractionType
    duration: float = 0.0           # seconds
    intensity: float = 0.5          # 0.0-1.0
    metadata: Optional[dict] = None
    timestamp: datetime = field(default_factory=_utcnow)
    event_id: str = field(default_factory=_new_event_id)

    def __post_init__(self):
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")
        if not 0.0 <= self.intensity <= 1.0:
            raise ValueError(f"intensity must be within [0, 1], got {self.intensity}")
        # Coerce plain strings so callers can pass raw wire values
        if not isinstance(self.context, AppContext):
            object.__setattr__(self, "context", AppContext(self.context))
        if not isinstance(self.interaction_type, InteractionType):
            object.__setattr__(self, "interaction_type", InteractionType(self.interaction_type))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    def to_dict(self) -> dict:
        """Flat string map suitable for a Redis hash."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.value,
            "item_identifier": self.item_identifier,
            "interaction_type": self.interaction_type.value,
            "duration": repr(float(self.duration)),
            "intensity": repr(float(self.intensity)),
            "metadata": json.dumps(self.metadata) if self.metadata is not None else "",
        }

    def to_payload(self) -> dict:
        """JSON payload used for backend submission."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.value,
            "item_identifier": self.item_identifier,
            "interaction_type": self.interaction_type.value,
            "duration": self.duration,
            "intensity": self.intensity,
            "metadata": self.metadata or {},
        }

    @classmethod
    def from_dict(cls, data: dict) -> EngagementEvent:
        raw_meta = data.get("metadata") or ""
        metadata = json.loads(raw_meta) if raw_meta else None
        return cls(
            event_id=data["event_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            context=AppContext(data["context"]),
            item_identifier=data["item_identifier"],
            interaction_type=InteractionType(data["interaction_type"]),
            duration=float(data.get("duration", 0.0)),
            intensity=float(data.get("intensity", 0.5)),
            metadata=metadata,
        )

    def to_redis(self, r: redis.Redis) -> None:
        """Persist event hash and timeline membership atomically."""
        pipe = r.pipeline(transaction=True)
        pipe.hset(f"{EVENT_PREFIX}{self.event_id}", mapping=self.to_dict())
        pipe.zadd(TIMELINE_KEY, {self.event_id: self.epoch})
        pipe.execute()

    @classmethod
    def from_redis(cls, r: redis.Redis, event_id: str) -> Optional[EngagementEvent]:
        """Load event from Redis by ID."""
        data = r.hgetall(f"{EVENT_PREFIX}{event_id}")
        if not data:
            return None
        decoded = {k.decode() if isinstance(k, bytes) else k:
                   v.decode() if isinstance(v, bytes) else v
                   for k, v in data.items()}
        return cls.from_dict(decoded)
