"""Nudge Scheduler — the single owner of the live nudge.

State machine:

    IDLE ──check──▶ EVALUATING ──receptive──▶ DELIVERED ──▶ ACKNOWLEDGED
      ▲                  │                       │      ├──▶ DISMISSED
      │            not receptive /               │      └──▶ TIMED_OUT
      │            snapshot failure              │
      └──────────────────┴──────── settle delay ◀┘

Invariants:
- At most one nudge is live. All transitions run under one asyncio.Lock and
  a check arriving while not IDLE is a no-op.
- No two deliveries within ``min_interval``. The gate is checked before any
  profile work, against a delivery time persisted across restarts.
- The display timer and every resolve path carry a generation number. A
  timer or settle callback whose generation is stale does nothing, so a
  nudge reaches exactly one terminal state and is archived once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional

import redis

from sthealth.agents.content_generator import ContentGenerator, fallback_nudge
from sthealth.agents.engagement_recorder import EngagementRecorder
from sthealth.config.settings import (
    NUDGE_DISPLAY_TIMEOUT_SECONDS,
    NUDGE_DISTINGUISH_DISMISS,
    NUDGE_HISTORY_WINDOW_DAYS,
    NUDGE_MIN_INTERVAL_HOURS,
    NUDGE_SETTLE_DELAY_SECONDS,
    PROFILE_WINDOW_DAYS,
    RECENT_BEHAVIOR_WINDOW_DAYS,
)
from sthealth.engine.event_store import EventStore
from sthealth.engine.profile_builder import ProfileBuilder
from sthealth.engine.receptivity import receptivity_verdict
from sthealth.models.engagement import AppContext, InteractionType
from sthealth.models.messages import NudgeDeliveryPayload, NudgeResponsePayload
from sthealth.models.nudge import (
    FRAMEWORK_FOR_TYPE,
    Nudge,
    NudgeResponse,
    NudgeState,
    NudgeType,
)
from sthealth.models.profile import PsychologicalProfile, RecentBehaviorAnalysis
from sthealth.services.analytics import AnalyticsSink
from sthealth.services.backend_client import BackendClient
from sthealth.services.nudge_archive import NudgeArchive
from sthealth.services.push_notifications import PushNotifier

logger = logging.getLogger(__name__)

BACKEND_SOURCE = "ios_nudge_engine"

# Engagement written back for each terminal outcome: (interaction, intensity)
OUTCOME_EVENTS: dict[NudgeState, tuple[InteractionType, float]] = {
    NudgeState.ACKNOWLEDGED: (InteractionType.COMPLETE, 1.0),
    NudgeState.DISMISSED: (InteractionType.ABANDON, 0.3),
    NudgeState.TIMED_OUT: (InteractionType.ABANDON, 0.1),
}

PATTERN_DOMINANCE_THRESHOLD = 0.6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NudgeStateChange:
    state: NudgeState
    nudge: Optional[Nudge]
    visible: bool
    at: datetime

    def to_payload(self) -> dict:
        return {
            "state": self.state.value,
            "visible": self.visible,
            "nudge": self.nudge.to_payload() if self.nudge else None,
            "at": self.at.isoformat(),
        }


StateObserver = Callable[[NudgeStateChange], None]


# ── Type selection ───────────────────────────────────────────────────────


def select_nudge_type(
    profile: PsychologicalProfile,
    behavior: RecentBehaviorAnalysis,
) -> NudgeType:
    """First matching rule wins. EMOTIONAL_GRANULARITY is never selected here."""
    if any(share > PATTERN_DOMINANCE_THRESHOLD for share in profile.reflection_patterns.values()):
        return NudgeType.PATTERN_INTERRUPTION
    if behavior.engagement_depth > 0.7 and behavior.receptivity_level > 0.7:
        return NudgeType.GROWTH_OPPORTUNITY
    if behavior.engagement_depth > 0.5:
        return NudgeType.VALUES_ALIGNMENT
    return NudgeType.GRATITUDE_STRENGTHS


def build_delivery_context(
    profile: PsychologicalProfile,
    behavior: RecentBehaviorAnalysis,
) -> dict[str, str]:
    return {
        "user_state": behavior.emotional_state,
        "receptivity": f"{behavior.receptivity_level:.2f}",
        "narrative_chapter": profile.current_life_narrative_chapter,
        "engagement_depth": f"{behavior.engagement_depth:.2f}",
    }


def delivery_payload(nudge: Nudge) -> NudgeDeliveryPayload:
    return NudgeDeliveryPayload(
        nudge_id=nudge.nudge_id,
        content=nudge.content,
        type=nudge.type.value,
        framework=nudge.framework.value,
        delivery_context=dict(nudge.delivery_context),
        generated_at=nudge.generated_at.isoformat(),
        delivered_at=nudge.delivered_at.isoformat(),
    )


def response_payload(nudge: Nudge) -> NudgeResponsePayload:
    return NudgeResponsePayload(
        nudge_id=nudge.nudge_id,
        response=nudge.response.value,
        response_timestamp=nudge.response_timestamp.isoformat(),
        response_time_seconds=nudge.response_time_seconds,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════


class NudgeScheduler:
    def __init__(
        self,
        store: EventStore,
        content_generator: ContentGenerator,
        archive: NudgeArchive,
        *,
        recorder: Optional[EngagementRecorder] = None,
        profile_builder: Optional[ProfileBuilder] = None,
        backend: Optional[BackendClient] = None,
        analytics: Optional[AnalyticsSink] = None,
        push: Optional[PushNotifier] = None,
        receptivity: Callable[..., tuple[bool, str]] = receptivity_verdict,
        clock: Callable[[], datetime] = _utcnow,
        min_interval: timedelta = timedelta(hours=NUDGE_MIN_INTERVAL_HOURS),
        display_timeout: float = NUDGE_DISPLAY_TIMEOUT_SECONDS,
        settle_delay: float = NUDGE_SETTLE_DELAY_SECONDS,
        distinguish_dismiss: bool = NUDGE_DISTINGUISH_DISMISS,
        tz: tzinfo = timezone.utc,
    ):
        self.store = store
        self.content_generator = content_generator
        self.archive = archive
        self.backend = backend
        self.analytics = analytics
        self.push = push
        self.recorder = recorder or EngagementRecorder(store, backend, clock)
        self.profile_builder = profile_builder or ProfileBuilder(
            store, PROFILE_WINDOW_DAYS, RECENT_BEHAVIOR_WINDOW_DAYS, NUDGE_HISTORY_WINDOW_DAYS,
        )
        self.receptivity = receptivity
        self.clock = clock
        self.min_interval = min_interval
        self.display_timeout = display_timeout
        self.settle_delay = settle_delay
        self.distinguish_dismiss = distinguish_dismiss
        self.tz = tz

        self._lock = asyncio.Lock()
        self._state = NudgeState.IDLE
        self._current: Optional[Nudge] = None
        self._visible = False
        self._generation = 0
        self._timer: Optional[asyncio.Task] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._observers: list[StateObserver] = []

        try:
            self._last_delivery = archive.last_delivery_time()
        except redis.RedisError as exc:
            logger.warning("Could not load last delivery time: %s", exc)
            self._last_delivery = None

    # -- Observable state --

    @property
    def state(self) -> NudgeState:
        return self._state

    @property
    def current_nudge(self) -> Optional[Nudge]:
        return self._current

    @property
    def is_nudge_visible(self) -> bool:
        return self._visible

    @property
    def last_delivery_time(self) -> Optional[datetime]:
        return self._last_delivery

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register for every transition, in order. Returns an unsubscribe callable."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _transition(self, state: NudgeState) -> None:
        self._state = state
        change = NudgeStateChange(state, self._current, self._visible, self.clock())
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("Nudge state observer failed on %s", state.value)

    # -- Evaluation --

    def _gate_open(self, now: datetime) -> bool:
        if self._last_delivery is None:
            return True
        return now - self._last_delivery >= self.min_interval

    async def check_for_opportunity(self) -> None:
        await self.evaluate()

    async def evaluate(self) -> Optional[Nudge]:
        """Run one evaluation cycle. Returns the delivered nudge, if any."""
        if self._state is not NudgeState.IDLE or self._lock.locked():
            logger.debug("Evaluation skipped: nudge in flight (%s)", self._state.value)
            return None

        async with self._lock:
            if self._state is not NudgeState.IDLE:
                return None

            now = self.clock()
            if not self._gate_open(now):
                logger.debug("Evaluation skipped: last delivery at %s", self._last_delivery)
                return None

            self._transition(NudgeState.EVALUATING)
            try:
                nudge, profile = await self._evaluate_locked(now)
            finally:
                if self._state is NudgeState.EVALUATING:
                    self._transition(NudgeState.IDLE)

        if nudge is not None:
            self._announce_delivery(nudge, profile)
        return nudge

    async def _evaluate_locked(
        self, now: datetime,
    ) -> tuple[Optional[Nudge], Optional[PsychologicalProfile]]:
        try:
            profile, behavior = self.profile_builder.build(now)
        except Exception:
            logger.exception("Snapshot build failed, evaluation aborted")
            return None, None

        receptive, reason = self.receptivity(profile, behavior, now.astimezone(self.tz))
        if not receptive:
            logger.debug("User not receptive: %s (sentiment=%.2f depth=%.2f receptivity=%.2f)",
                         reason, behavior.last_reflection_sentiment, behavior.engagement_depth,
                         behavior.receptivity_level)
            return None, None
        logger.debug("User receptive: %s", reason)

        nudge_type = select_nudge_type(profile, behavior)
        framework = FRAMEWORK_FOR_TYPE[nudge_type]
        try:
            content = await self.content_generator.generate(nudge_type, framework, profile, behavior)
        except Exception as exc:
            logger.warning("Content generator raised, using fallback: %s", exc)
            content = ""
        if not content:
            content = fallback_nudge(nudge_type)

        nudge = Nudge(
            content=content,
            type=nudge_type,
            framework=framework,
            delivery_context=build_delivery_context(profile, behavior),
            generated_at=now,
        )
        self._deliver_locked(nudge)
        return nudge, profile

    def _deliver_locked(self, nudge: Nudge) -> None:
        now = self.clock()
        nudge.delivered_at = now
        self._current = nudge
        self._visible = True
        self._last_delivery = now
        try:
            self.archive.set_last_delivery_time(now)
        except redis.RedisError as exc:
            logger.warning("Could not persist last delivery time: %s", exc)

        self._generation += 1
        self._timer = asyncio.create_task(self._display_timeout_after(self._generation))
        self._transition(NudgeState.DELIVERED)
        logger.info("Nudge %s delivered (%s/%s)", nudge.nudge_id,
                    nudge.type.value, nudge.framework.value)

    def _announce_delivery(self, nudge: Nudge, profile: PsychologicalProfile) -> None:
        self.recorder.record_interaction(
            AppContext.REFLECTION,
            nudge.item_identifier,
            InteractionType.VIEW,
            metadata={"type": nudge.type.value, "framework": nudge.framework.value},
        )
        if self.backend is not None:
            self.backend.submit_in_background(
                "nudge_delivery", BACKEND_SOURCE, delivery_payload(nudge).model_dump(),
            )
        if self.analytics is not None:
            self.analytics.track("nudge_shown", {
                "nudge_type": nudge.type.value,
                "content": nudge.content,
            })
        if self.push is not None:
            self.push.schedule(nudge, profile.optimal_receptivity_windows, self.clock())

    # -- Timer --

    async def _display_timeout_after(self, generation: int) -> None:
        try:
            await asyncio.sleep(self.display_timeout)
        except asyncio.CancelledError:
            return
        await self.handle_display_timeout(generation)

    async def handle_display_timeout(self, generation: int) -> Optional[Nudge]:
        """Timer callback. A stale generation or an answered nudge makes this a no-op."""
        async with self._lock:
            nudge = self._current
            if (
                generation != self._generation
                or self._state is not NudgeState.DELIVERED
                or nudge is None
                or nudge.response is not None
            ):
                logger.debug("Stale display timeout (generation %d, current %d)",
                             generation, self._generation)
                return None
            # Fired from inside the timer task; nothing left to cancel
            self._timer = None
            return self._resolve_locked(NudgeResponse.TIMEOUT, NudgeState.TIMED_OUT)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    # -- Responses --

    async def acknowledge(self) -> Optional[Nudge]:
        return await self._resolve(NudgeResponse.ACKNOWLEDGED, NudgeState.ACKNOWLEDGED)

    async def dismiss(self) -> Optional[Nudge]:
        if not self.distinguish_dismiss:
            return await self.acknowledge()
        return await self._resolve(NudgeResponse.IGNORED, NudgeState.DISMISSED)

    async def _resolve(self, response: NudgeResponse, terminal: NudgeState) -> Optional[Nudge]:
        async with self._lock:
            nudge = self._current
            if self._state is not NudgeState.DELIVERED or nudge is None or nudge.response is not None:
                logger.debug("%s ignored: no live nudge (%s)", response.value, self._state.value)
                return None
            self._cancel_timer()
            return self._resolve_locked(response, terminal)

    def _resolve_locked(self, response: NudgeResponse, terminal: NudgeState) -> Nudge:
        nudge = self._current
        self._generation += 1
        nudge.response = response
        nudge.response_timestamp = self.clock()
        self._visible = False
        self._transition(terminal)
        logger.info("Nudge %s %s after %.1fs", nudge.nudge_id, terminal.value,
                    nudge.response_time_seconds)

        self._archive(nudge)
        self._record_outcome(nudge, terminal)
        self._schedule_settle(self._generation)
        return nudge

    def _archive(self, nudge: Nudge) -> None:
        try:
            self.archive.archive(nudge)
        except redis.RedisError as exc:
            logger.warning("Failed to archive nudge %s: %s", nudge.nudge_id, exc)

    def _record_outcome(self, nudge: Nudge, terminal: NudgeState) -> None:
        interaction, intensity = OUTCOME_EVENTS[terminal]
        self.recorder.record_interaction(
            AppContext.REFLECTION,
            nudge.item_identifier,
            interaction,
            intensity=intensity,
            metadata={"response": nudge.response.value},
        )
        if self.backend is not None:
            self.backend.submit_in_background(
                "nudge_response", BACKEND_SOURCE, response_payload(nudge).model_dump(),
            )
        if self.analytics is not None:
            if nudge.response is NudgeResponse.ACKNOWLEDGED:
                self.analytics.track("nudge_acknowledged", {
                    "nudge_type": nudge.type.value,
                    "method": "dismiss" if terminal is NudgeState.DISMISSED else "tap",
                    "time_shown_seconds": nudge.response_time_seconds,
                })
            else:
                self.analytics.track("nudge_ignored", {
                    "nudge_type": nudge.type.value,
                    "reason": nudge.response.value,
                    "time_shown_seconds": nudge.response_time_seconds,
                })

    # -- Settle --

    def _schedule_settle(self, generation: int) -> None:
        if self.settle_delay <= 0:
            self._settle_locked(generation)
            return
        self._settle_task = asyncio.create_task(self._settle_after(generation))

    async def _settle_after(self, generation: int) -> None:
        try:
            await asyncio.sleep(self.settle_delay)
        except asyncio.CancelledError:
            return
        async with self._lock:
            self._settle_locked(generation)

    def _settle_locked(self, generation: int) -> None:
        if generation != self._generation or not self._state.is_terminal:
            return
        self._current = None
        self._transition(NudgeState.IDLE)

    # -- Periodic loop --

    async def _evaluation_loop(self, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    self.store.retry_pending()
                    await self.check_for_opportunity()
                except Exception:
                    logger.exception("Nudge evaluation tick failed")
        except asyncio.CancelledError:
            pass

    def start(self, interval: float) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._evaluation_loop(interval))
            logger.info("Nudge evaluation loop started (every %ss)", interval)

    async def stop(self) -> None:
        """Cancel the loop and any pending timer or settle task."""
        tasks = [t for t in (self._loop_task, self._timer, self._settle_task)
                 if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = self._timer = self._settle_task = None
