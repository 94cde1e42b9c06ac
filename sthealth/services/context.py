"""Process-wide service container.

Built once at startup and passed by reference to whatever owns the app
lifecycle (the FastAPI host, scripts, tests). Nothing in the engine reaches
for a global instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

import redis

from sthealth.agents.content_generator import ContentGenerator
from sthealth.agents.engagement_recorder import EngagementRecorder
from sthealth.agents.nudge_scheduler import NudgeScheduler
from sthealth.config.settings import (
    NUDGE_HISTORY_WINDOW_DAYS,
    PROFILE_WINDOW_DAYS,
    RECENT_BEHAVIOR_WINDOW_DAYS,
    USER_TIMEZONE,
)
from sthealth.engine.event_store import EventStore
from sthealth.engine.profile_builder import ProfileBuilder
from sthealth.engine.significance import SignificanceScorer
from sthealth.services.analytics import AnalyticsSink
from sthealth.services.backend_client import BackendClient
from sthealth.services.nudge_archive import NudgeArchive
from sthealth.services.push_notifications import PushNotifier


@dataclass
class AppServices:
    store: EventStore
    recorder: EngagementRecorder
    scorer: SignificanceScorer
    profile_builder: ProfileBuilder
    archive: NudgeArchive
    backend: BackendClient
    analytics: AnalyticsSink
    push: PushNotifier
    scheduler: NudgeScheduler


def build_services(
    r: redis.Redis,
    *,
    content_generator: Optional[ContentGenerator] = None,
    backend: Optional[BackendClient] = None,
    **scheduler_options,
) -> AppServices:
    """Wire every collaborator around one Redis connection."""
    tz = ZoneInfo(USER_TIMEZONE)
    store = EventStore(r, tz=tz)
    backend = backend or BackendClient()
    recorder = EngagementRecorder(store, backend)
    if "clock" in scheduler_options:
        recorder.clock = scheduler_options["clock"]
    profile_builder = ProfileBuilder(
        store, PROFILE_WINDOW_DAYS, RECENT_BEHAVIOR_WINDOW_DAYS, NUDGE_HISTORY_WINDOW_DAYS,
    )
    archive = NudgeArchive(r)
    analytics = AnalyticsSink(backend)
    push = PushNotifier(r, tz=tz)

    scheduler_options.setdefault("tz", tz)
    scheduler = NudgeScheduler(
        store,
        content_generator or ContentGenerator(),
        archive,
        recorder=recorder,
        profile_builder=profile_builder,
        backend=backend,
        analytics=analytics,
        push=push,
        **scheduler_options,
    )
    return AppServices(
        store=store,
        recorder=recorder,
        scorer=SignificanceScorer(store),
        profile_builder=profile_builder,
        archive=archive,
        backend=backend,
        analytics=analytics,
        push=push,
        scheduler=scheduler,
    )
