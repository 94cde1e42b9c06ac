"""Engagement Recorder — typed recording API for feature code.

Every interaction becomes an immutable EngagementEvent appended to the
EventStore and mirrored to the backend as an ``engagement_event`` data
point. Recording never raises for storage or telemetry failures; only a
malformed request (unknown context, bad enum value) is rejected.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from sthealth.engine.event_store import EventStore
from sthealth.models.engagement import AppContext, EngagementEvent, InteractionType
from sthealth.services.backend_client import BackendClient

logger = logging.getLogger(__name__)

DATA_TYPE = "engagement_event"
SOURCE = "ios_app"

HESITATION_SATURATION_SECONDS = 10.0   # 10 seconds = max intensity
REREAD_SATURATION = 3.0
PATHWAY_DEPTH_SATURATION = 5.0         # 5 levels deep = max intensity
REFLECTION_WORDS_SATURATION = 100.0    # 100 words = max intensity


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class EngagementRecorder:
    def __init__(
        self,
        store: EventStore,
        backend: Optional[BackendClient] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.backend = backend
        self.clock = clock
        self._focus_started: dict[str, datetime] = {}
        self._focus_lock = threading.Lock()

    def record(self, event: EngagementEvent) -> EngagementEvent:
        self.store.record(event)
        if self.backend is not None:
            self.backend.submit_in_background(DATA_TYPE, SOURCE, event.to_payload())
        logger.debug("Recorded %s/%s on %s", event.context.value,
                     event.interaction_type.value, event.item_identifier)
        return event

    def record_interaction(
        self,
        context: AppContext | str,
        item: str,
        interaction_type: InteractionType | str,
        duration: float = 0.0,
        intensity: float = 0.5,
        metadata: dict[str, str] | None = None,
    ) -> EngagementEvent:
        event = EngagementEvent(
            context=AppContext(context),
            item_identifier=item,
            interaction_type=InteractionType(interaction_type),
            duration=max(0.0, duration),
            intensity=_clamp(intensity),
            metadata=metadata,
            timestamp=self.clock(),
        )
        return self.record(event)

    # -- Focus sessions --

    def start_focus(self, item: str, context: AppContext | str) -> None:
        with self._focus_lock:
            self._focus_started[item] = self.clock()

    def end_focus(
        self,
        item: str,
        context: AppContext | str,
        intensity: float = 0.5,
    ) -> Optional[EngagementEvent]:
        """Close a focus session. No-op (None) if none was started for ``item``."""
        with self._focus_lock:
            started = self._focus_started.pop(item, None)
        if started is None:
            logger.debug("end_focus without start for %s", item)
            return None
        duration = (self.clock() - started).total_seconds()
        return self.record_interaction(context, item, InteractionType.FOCUS,
                                       duration=duration, intensity=intensity)

    @property
    def open_focus_sessions(self) -> list[str]:
        with self._focus_lock:
            return sorted(self._focus_started)

    # -- Convenience recorders --

    def record_card_hesitation(self, card_id: str, hesitation_time: float) -> EngagementEvent:
        return self.record_interaction(
            AppContext.CARDS,
            f"hypothesis_{card_id}",
            InteractionType.HESITATE,
            duration=hesitation_time,
            intensity=min(1.0, hesitation_time / HESITATION_SATURATION_SECONDS),
        )

    def record_card_reconsideration(self, card_id: str, reread_count: int) -> EngagementEvent:
        return self.record_interaction(
            AppContext.CARDS,
            f"hypothesis_{card_id}",
            InteractionType.RECONSIDER,
            intensity=min(1.0, reread_count / REREAD_SATURATION),
            metadata={"reread_count": str(reread_count)},
        )

    def track_workshop_tool_usage(
        self,
        tool_name: str,
        duration: float,
        completed: bool,
    ) -> EngagementEvent:
        return self.record_interaction(
            AppContext.WORKSHOP,
            f"workshop_tool_{tool_name}",
            InteractionType.COMPLETE if completed else InteractionType.ABANDON,
            duration=duration,
            intensity=1.0 if completed else 0.3,
        )

    def track_neural_pathway_exploration(
        self,
        pathway_id: str,
        duration: float,
        depth: int,
    ) -> EngagementEvent:
        return self.record_interaction(
            AppContext.ATLAS,
            f"neural_pathway_{pathway_id}",
            InteractionType.EXPLORE,
            duration=duration,
            intensity=min(1.0, depth / PATHWAY_DEPTH_SATURATION),
            metadata={"exploration_depth": str(depth)},
        )

    def track_reflection_entry(
        self,
        reflection_id: str,
        word_count: int,
        duration: float,
        input_method: str,
        extra: dict[str, str] | None = None,
    ) -> EngagementEvent:
        """Record a finished reflection; ``extra`` may carry text, theme, emotion, sentiment."""
        metadata = {"word_count": str(word_count), "input_method": input_method}
        if extra:
            metadata.update({k: str(v) for k, v in extra.items()})
        return self.record_interaction(
            AppContext.REFLECTION,
            f"reflection_{reflection_id}",
            InteractionType.COMPLETE,
            duration=duration,
            intensity=min(1.0, word_count / REFLECTION_WORDS_SATURATION),
            metadata=metadata,
        )

    def clear_all(self) -> None:
        """Account reset."""
        with self._focus_lock:
            self._focus_started.clear()
        self.store.clear_all()
