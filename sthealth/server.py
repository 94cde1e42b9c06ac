"""FastAPI server exposing the engagement and nudge engines to the app.

WebSocket for live nudge state + REST endpoints for recording engagement,
querying significance and driving the nudge lifecycle.

Endpoints:
- Engagement: /api/engagement/* (record, focus sessions, reset, diagnostics)
- Significance: /api/significance/*
- Nudges: /api/nudges/* (check, acknowledge, dismiss, current, history)
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sthealth.agents.nudge_scheduler import NudgeStateChange
from sthealth.config.settings import NUDGE_EVALUATION_INTERVAL_SECONDS, REDIS_URL
from sthealth.models.engagement import AppContext, InteractionType
from sthealth.services.context import AppServices, build_services

logger = logging.getLogger(__name__)

app = FastAPI(title="Sthealth", description="Engagement-driven nudges and significance scoring")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def _build_ws_message(msg_type: str, payload: dict) -> str:
    """Build a JSON WebSocket message in the {type, payload, timestamp} format."""
    return json.dumps({
        "type": msg_type,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


# ── WebSocket Manager ────────────────────────────────────────────────────

class ConnectionManager:
    """Tracks WebSocket clients and relays nudge state changes in order."""

    def __init__(self):
        self._connections: list[WebSocket] = []
        self._queue: Optional[asyncio.Queue] = None
        self._relay_task: Optional[asyncio.Task] = None

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self._connections.append(ws)
        logger.info("WebSocket connected. Total: %d", len(self._connections))

    def disconnect(self, ws: WebSocket):
        if ws in self._connections:
            self._connections.remove(ws)
        logger.info("WebSocket disconnected. Total: %d", len(self._connections))

    async def broadcast(self, message: str):
        disconnected = []
        for ws in self._connections:
            try:
                await ws.send_text(message)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            if ws in self._connections:
                self._connections.remove(ws)

    def enqueue(self, message: str) -> None:
        """Queue a message from synchronous code running on the event loop."""
        loop = asyncio.get_running_loop()
        task = self._relay_task
        if task is None or task.done() or task.get_loop() is not loop:
            self._queue = asyncio.Queue()
            self._relay_task = loop.create_task(self._relay())
        self._queue.put_nowait(message)

    async def _relay(self):
        try:
            while True:
                message = await self._queue.get()
                await self.broadcast(message)
        except asyncio.CancelledError:
            pass

    async def close(self):
        if self._relay_task and not self._relay_task.done():
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
        self._relay_task = None

    @property
    def count(self) -> int:
        return len(self._connections)


manager = ConnectionManager()


# ── Shared State ─────────────────────────────────────────────────────────

_context: Optional[AppServices] = None


def _relay_state_change(change: NudgeStateChange) -> None:
    try:
        manager.enqueue(_build_ws_message("nudge_state", change.to_payload()))
    except RuntimeError:
        logger.debug("No running loop for nudge_state relay")


def _get_context() -> AppServices:
    """Build the service container on first use, around one Redis client."""
    global _context
    if _context is None:
        _context = build_services(_get_redis())
        _context.scheduler.subscribe(_relay_state_change)
    return _context


def _nudge_state_payload(ctx: AppServices) -> dict:
    scheduler = ctx.scheduler
    nudge = scheduler.current_nudge
    return {
        "state": scheduler.state.value,
        "visible": scheduler.is_nudge_visible,
        "nudge": nudge.to_payload() if nudge else None,
        "last_delivery_time": (
            scheduler.last_delivery_time.isoformat() if scheduler.last_delivery_time else None
        ),
    }


@app.on_event("startup")
async def start_background_tasks():
    """Start the periodic evaluation tick and analytics flushing."""
    ctx = _get_context()
    ctx.scheduler.start(NUDGE_EVALUATION_INTERVAL_SECONDS)
    ctx.analytics.start()
    ctx.analytics.start_session()


@app.on_event("shutdown")
async def stop_background_tasks():
    if _context is None:
        return
    _context.analytics.end_session()
    await _context.scheduler.stop()
    await _context.analytics.stop()
    await _context.backend.drain()
    await manager.close()


# ── WebSocket Endpoint ───────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    ctx = _get_context()
    try:
        await ws.send_text(_build_ws_message("nudge_state", _nudge_state_payload(ctx)))

        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue

            msg_type = msg.get("type", "")
            if msg_type == "acknowledge":
                await ctx.scheduler.acknowledge()
            elif msg_type == "dismiss":
                await ctx.scheduler.dismiss()
            elif msg_type == "check":
                await ctx.scheduler.check_for_opportunity()
            else:
                logger.info("Client message: %s", msg)

    except WebSocketDisconnect:
        manager.disconnect(ws)


# ── Health ───────────────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    ctx = _get_context()
    try:
        ctx.store.r.ping()
        redis_ok = True
    except redis.RedisError:
        redis_ok = False

    return {
        "status": "ok",
        "redis": redis_ok,
        "ws_connections": manager.count,
        "nudge_state": ctx.scheduler.state.value,
        "pending_events": ctx.store.pending_count,
    }


# ── Engagement ───────────────────────────────────────────────────────────

class RecordEventRequest(BaseModel):
    context: AppContext
    item_identifier: str = Field(min_length=1)
    interaction_type: InteractionType
    duration: float = Field(default=0.0, ge=0.0)
    intensity: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: Optional[dict[str, str]] = None


class FocusRequest(BaseModel):
    item: str = Field(min_length=1)
    context: AppContext
    intensity: float = Field(default=0.5, ge=0.0, le=1.0)


class ReflectionEntryRequest(BaseModel):
    reflection_id: str
    word_count: int = Field(ge=0)
    duration: float = Field(default=0.0, ge=0.0)
    input_method: str = "text"
    text: Optional[str] = None
    theme: Optional[str] = None
    emotion: Optional[str] = None
    sentiment: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


@app.post("/api/engagement/events")
async def record_event(req: RecordEventRequest):
    ctx = _get_context()
    event = ctx.recorder.record_interaction(
        req.context, req.item_identifier, req.interaction_type,
        duration=req.duration, intensity=req.intensity, metadata=req.metadata,
    )
    return {"status": "recorded", "event": event.to_payload()}


@app.post("/api/engagement/reflections")
async def record_reflection(req: ReflectionEntryRequest):
    ctx = _get_context()
    extra = {
        key: str(value)
        for key, value in (
            ("text", req.text), ("theme", req.theme),
            ("emotion", req.emotion), ("sentiment", req.sentiment),
        )
        if value is not None
    }
    event = ctx.recorder.track_reflection_entry(
        req.reflection_id, req.word_count, req.duration, req.input_method, extra,
    )
    return {"status": "recorded", "event": event.to_payload()}


@app.post("/api/engagement/focus/start")
async def start_focus(req: FocusRequest):
    _get_context().recorder.start_focus(req.item, req.context)
    return {"status": "started", "item": req.item}


@app.post("/api/engagement/focus/end")
async def end_focus(req: FocusRequest):
    event = _get_context().recorder.end_focus(req.item, req.context, req.intensity)
    if event is None:
        return {"status": "noop", "item": req.item}
    return {"status": "recorded", "event": event.to_payload()}


@app.delete("/api/engagement")
async def clear_engagement():
    """Account reset: drops every recorded engagement event."""
    _get_context().recorder.clear_all()
    return {"status": "cleared"}


@app.get("/api/engagement/diagnostics")
async def engagement_diagnostics():
    ctx = _get_context()
    return {
        **ctx.scorer.diagnostics(),
        "event_count": ctx.store.count(),
        "pending_events": ctx.store.pending_count,
    }


# ── Significance ─────────────────────────────────────────────────────────

@app.get("/api/significance/top")
async def top_significance(limit: int = Query(default=10, ge=1, le=100)):
    scores = _get_context().scorer.top_concepts(limit)
    return {"concepts": [s.to_dict() for s in scores]}


@app.get("/api/significance/{concept}")
async def concept_significance(concept: str):
    return _get_context().scorer.score_concept(concept).to_dict()


# ── Nudges ───────────────────────────────────────────────────────────────

@app.post("/api/nudges/check")
async def check_for_nudge():
    """App-foreground trigger. Delivers at most one nudge."""
    ctx = _get_context()
    nudge = await ctx.scheduler.evaluate()
    if nudge is None:
        return {"status": "noop", "state": ctx.scheduler.state.value}
    return {"status": "delivered", "nudge": nudge.to_payload()}


@app.post("/api/nudges/acknowledge")
async def acknowledge_nudge():
    ctx = _get_context()
    nudge = await ctx.scheduler.acknowledge()
    if nudge is None:
        return {"status": "noop", "state": ctx.scheduler.state.value}
    return {"status": "acknowledged", "nudge": nudge.to_payload()}


@app.post("/api/nudges/dismiss")
async def dismiss_nudge():
    ctx = _get_context()
    nudge = await ctx.scheduler.dismiss()
    if nudge is None:
        return {"status": "noop", "state": ctx.scheduler.state.value}
    return {"status": "dismissed", "nudge": nudge.to_payload()}


@app.get("/api/nudges/current")
async def current_nudge():
    return _nudge_state_payload(_get_context())


@app.get("/api/nudges/history")
async def nudge_history(limit: int = Query(default=20, ge=1, le=200)):
    nudges = _get_context().archive.recent(limit)
    return {"nudges": [n.to_payload() for n in nudges]}
