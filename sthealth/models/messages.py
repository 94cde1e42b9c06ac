"""Typed wire models for backend submission and push relay.

All outbound payloads are pydantic models so the shape is validated once,
at construction, instead of at every call site.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class DataPointCreate(BaseModel):
    """One telemetry record accepted by the backend's /data-points/ endpoint."""
    data_type: str           # engagement_event | nudge_delivery | nudge_response | analytics
    source: str              # ios_app | ios_nudge_engine | app_tracking
    payload: dict[str, Any] = Field(default_factory=dict)


class NudgeDeliveryPayload(BaseModel):
    """Sent when a nudge becomes externally observable."""
    nudge_id: str
    content: str
    type: str
    framework: str
    delivery_context: dict[str, str]
    generated_at: str        # ISO 8601
    delivered_at: str        # ISO 8601


class NudgeResponsePayload(BaseModel):
    """Sent once per nudge, on its terminal outcome."""
    nudge_id: str
    response: str            # acknowledged | ignored | timeout
    response_timestamp: str  # ISO 8601
    response_time_seconds: float


class AnalyticsEventData(BaseModel):
    """Queued analytics record before batching."""
    event_name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    timestamp: str           # ISO 8601


class PushNotificationPayload(BaseModel):
    """Out-of-band copy of a nudge published for the device relay."""
    nudge_id: str
    title: str
    body: str
    category: str = "NUDGE"
    deliver_at: Optional[str] = None  # ISO 8601
