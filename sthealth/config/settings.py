"""Application-wide configuration loaded from environment variables."""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Redis (event store, nudge archive, timing state)
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

# ── Content Generation ───────────────────────────────────────────────────

ANTHROPIC_API_KEY: str = os.getenv("ANTHROPIC_API_KEY", "")
NUDGE_CONTENT_MODEL: str = os.getenv("NUDGE_CONTENT_MODEL", "claude-sonnet-4-5-20250929")
NUDGE_CONTENT_MAX_TOKENS: int = int(os.getenv("NUDGE_CONTENT_MAX_TOKENS", "80"))
NUDGE_CONTENT_TIMEOUT_SECONDS: float = float(os.getenv("NUDGE_CONTENT_TIMEOUT_SECONDS", "10.0"))

# ── Nudge Scheduling ─────────────────────────────────────────────────────

NUDGE_MIN_INTERVAL_HOURS: float = float(os.getenv("NUDGE_MIN_INTERVAL_HOURS", "24"))
NUDGE_DISPLAY_TIMEOUT_SECONDS: float = float(os.getenv("NUDGE_DISPLAY_TIMEOUT_SECONDS", "300"))
NUDGE_SETTLE_DELAY_SECONDS: float = float(os.getenv("NUDGE_SETTLE_DELAY_SECONDS", "0.5"))
NUDGE_EVALUATION_INTERVAL_SECONDS: int = int(os.getenv("NUDGE_EVALUATION_INTERVAL_SECONDS", "60"))

# When false, a dismiss gesture is recorded exactly like an acknowledgement.
NUDGE_DISTINGUISH_DISMISS: bool = _env_bool("NUDGE_DISTINGUISH_DISMISS", "true")

# ── Profile Construction ─────────────────────────────────────────────────

# Zone used for hour-of-day and calendar-day computations
USER_TIMEZONE: str = os.getenv("USER_TIMEZONE", "UTC")
PROFILE_WINDOW_DAYS: int = int(os.getenv("PROFILE_WINDOW_DAYS", "14"))
RECENT_BEHAVIOR_WINDOW_DAYS: int = int(os.getenv("RECENT_BEHAVIOR_WINDOW_DAYS", "3"))
# How far back nudge outcomes are read for the acknowledgement rate
NUDGE_HISTORY_WINDOW_DAYS: int = int(os.getenv("NUDGE_HISTORY_WINDOW_DAYS", "90"))

# ── Backend Submission ───────────────────────────────────────────────────

# Empty BACKEND_URL disables telemetry submission entirely.
BACKEND_URL: str = os.getenv("BACKEND_URL", "")
BACKEND_API_TOKEN: str = os.getenv("BACKEND_API_TOKEN", "")
BACKEND_TIMEOUT_SECONDS: float = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "10.0"))

# ── Analytics ────────────────────────────────────────────────────────────

ANALYTICS_BATCH_SIZE: int = int(os.getenv("ANALYTICS_BATCH_SIZE", "50"))
ANALYTICS_FLUSH_INTERVAL_SECONDS: int = int(os.getenv("ANALYTICS_FLUSH_INTERVAL_SECONDS", "30"))

# ── Push Notifications ───────────────────────────────────────────────────

PUSH_NOTIFICATIONS_ENABLED: bool = _env_bool("PUSH_NOTIFICATIONS_ENABLED", "true")

# ── Server Configuration ─────────────────────────────────────────────────

SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
