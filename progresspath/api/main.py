from __future__ import annotations

"""
HTTP and WebSocket surface for ProgressPath.

Design intent:
- Keep API orchestration thin and typed.
- Delegate domain logic to the orchestration, tracking and notify modules.
- Blocking model calls run in the worker pool so one slow turn never stalls
  the event loop.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import anyio
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from progresspath.inference.gateway import InferenceGateway, InferenceGatewayError, build_gateway
from progresspath.internal_core.config import AppConfig, load_config
from progresspath.internal_core.contracts import (
    Alert,
    AlertKind,
    GoalKind,
    Group,
    Message,
    ParticipantSession,
)
from progresspath.internal_core.errors import NotFoundError, ProgressPathError
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.hub import NotificationHub, group_channel, session_channel
from progresspath.notify.notifier import Notifier
from progresspath.orchestration.alerts import resolve_alert
from progresspath.orchestration.groups import GroupService
from progresspath.orchestration.turn_processor import TurnProcessor
from progresspath.tracking.watchdog import InactivityWatchdog

logger = logging.getLogger(__name__)


class CreateGroupRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    goal_text: str = Field(min_length=1)
    facilitator_id: Optional[str] = Field(default=None, max_length=128)


class RejectInterpretationRequest(BaseModel):
    goal_text: str = Field(min_length=1)


class JoinRequest(BaseModel):
    join_token: str = Field(min_length=1, max_length=16)
    nickname: str = Field(min_length=1)
    device_token: str = Field(min_length=1, max_length=128)


class SendMessageRequest(BaseModel):
    body: str


class GroupResponse(BaseModel):
    id: str
    name: str
    goal_text: str
    goal_kind: GoalKind
    step_count: Optional[int] = None
    steps: list[str] = Field(default_factory=list)
    welcome_message: str = ""
    initial_guidance: str = ""
    confirmed: bool
    join_token: str
    terminal_progress: int
    created_at: datetime


class SessionResponse(BaseModel):
    id: str
    group_id: str
    nickname: str
    progress: int
    completed: bool
    off_topic_count: int
    active_alert: bool
    alert_kind: Optional[AlertKind] = None
    last_activity_at: Optional[datetime] = None
    joined_at: datetime


class JoinResponse(BaseModel):
    session: SessionResponse
    group: GroupResponse
    created: bool


class TurnResponse(BaseModel):
    participant_message: Message
    reply: Message
    session: SessionResponse
    alert: Optional[Alert] = None
    progress_changed: bool = False
    newly_completed: bool = False
    inference_failed: bool = False


class AlertResolutionResponse(BaseModel):
    alert: Alert
    session: SessionResponse
    changed: bool


def _group_response(group: Group) -> GroupResponse:
    return GroupResponse(
        **group.model_dump(exclude={"facilitator_id"}),
        terminal_progress=group.terminal_progress,
    )


def _session_response(session: ParticipantSession) -> SessionResponse:
    return SessionResponse(**session.model_dump(exclude={"device_token", "inactivity_warning_at"}))


def _get_config() -> AppConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, AppConfig):
        return existing
    created = load_config()
    setattr(app.state, "config", created)
    return created


def _get_store() -> InMemorySessionStore:
    existing = getattr(app.state, "store", None)
    if isinstance(existing, InMemorySessionStore):
        return existing
    created = InMemorySessionStore()
    setattr(app.state, "store", created)
    return created


def _get_hub() -> NotificationHub:
    existing = getattr(app.state, "hub", None)
    if isinstance(existing, NotificationHub):
        return existing
    created = NotificationHub()
    setattr(app.state, "hub", created)
    return created


def _get_gateway() -> InferenceGateway:
    existing = getattr(app.state, "gateway", None)
    if isinstance(existing, InferenceGateway):
        return existing
    created = build_gateway(_get_config())
    setattr(app.state, "gateway", created)
    return created


def _get_notifier() -> Notifier:
    return Notifier(_get_hub())


def _get_group_service() -> GroupService:
    return GroupService(
        _get_store(),
        _get_gateway(),
        _get_notifier(),
        goal_max_chars=_get_config().GOAL_MAX_CHARS,
    )


def _get_turn_processor() -> TurnProcessor:
    cfg = _get_config()
    return TurnProcessor(
        _get_store(),
        _get_gateway(),
        _get_notifier(),
        history_max_messages=cfg.HISTORY_MAX_MESSAGES,
        history_max_tokens=cfg.HISTORY_MAX_TOKENS,
        history_tail_messages=cfg.HISTORY_TAIL_MESSAGES,
    )


def _get_watchdog() -> InactivityWatchdog:
    existing = getattr(app.state, "watchdog", None)
    if isinstance(existing, InactivityWatchdog):
        return existing
    cfg = _get_config()
    created = InactivityWatchdog(
        _get_store(),
        _get_notifier(),
        threshold_sec=cfg.INACTIVITY_THRESHOLD_SECONDS,
        interval_sec=cfg.WATCHDOG_INTERVAL_SECONDS,
    )
    setattr(app.state, "watchdog", created)
    return created


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    cfg = _get_config()
    logging.getLogger("progresspath").setLevel(cfg.LOG_LEVEL)
    # Shared components exist before the first request reaches a worker thread.
    _get_store()
    _get_hub()
    _get_gateway()
    watchdog: Optional[InactivityWatchdog] = None
    if cfg.WATCHDOG_ENABLED:
        watchdog = _get_watchdog()
        watchdog.start()
    try:
        yield
    finally:
        if watchdog is not None:
            watchdog.stop()


app = FastAPI(title="progresspath service", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ProgressPathError)
async def _progresspath_error_handler(_: Request, exc: ProgressPathError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.message})


@app.exception_handler(InferenceGatewayError)
async def _inference_error_handler(_: Request, exc: InferenceGatewayError) -> JSONResponse:
    logger.warning("inference_unavailable error=%s", exc)
    return JSONResponse(
        status_code=503,
        content={
            "code": "inference_unavailable",
            "detail": "The goal could not be interpreted right now. Please try again.",
        },
    )


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    cfg = _get_config()
    watchdog = getattr(app.state, "watchdog", None)
    return {
        "status": "ok",
        "llm_backend": cfg.LLM_BACKEND,
        "llm_configured": cfg.llm_configured,
        "watchdog_running": bool(isinstance(watchdog, InactivityWatchdog) and watchdog.running),
    }


# -- facilitator -------------------------------------------------------------


@app.post("/groups", response_model=GroupResponse, status_code=201)
def create_group(payload: CreateGroupRequest) -> GroupResponse:
    group = _get_group_service().create_group(payload.name, payload.goal_text, payload.facilitator_id)
    return _group_response(group)


@app.get("/groups", response_model=list[GroupResponse])
async def list_groups(facilitator_id: Optional[str] = Query(default=None)) -> list[GroupResponse]:
    return [_group_response(item) for item in _get_store().list_groups(facilitator_id)]


@app.get("/groups/{group_id}", response_model=GroupResponse)
async def get_group(group_id: str) -> GroupResponse:
    return _group_response(_get_store().get_group(group_id))


@app.post("/groups/{group_id}/confirm", response_model=GroupResponse)
async def confirm_group(group_id: str) -> GroupResponse:
    return _group_response(_get_group_service().confirm_group(group_id))


@app.post("/groups/{group_id}/reject", response_model=GroupResponse)
def reject_interpretation(group_id: str, payload: RejectInterpretationRequest) -> GroupResponse:
    group = _get_group_service().reject_interpretation(group_id, payload.goal_text)
    return _group_response(group)


@app.get("/groups/{group_id}/sessions", response_model=list[SessionResponse])
async def list_group_sessions(group_id: str) -> list[SessionResponse]:
    return [_session_response(item) for item in _get_group_service().list_sessions(group_id)]


@app.get("/groups/{group_id}/alerts", response_model=list[Alert])
async def list_group_alerts(group_id: str) -> list[Alert]:
    return _get_store().list_unresolved_alerts(group_id)


@app.post("/alerts/{alert_id}/resolve", response_model=AlertResolutionResponse)
async def resolve_group_alert(alert_id: str) -> AlertResolutionResponse:
    resolution = resolve_alert(_get_store(), _get_notifier(), alert_id)
    return AlertResolutionResponse(
        alert=resolution.alert,
        session=_session_response(resolution.session),
        changed=resolution.changed,
    )


# -- participant -------------------------------------------------------------


@app.get("/join/{join_token}", response_model=GroupResponse)
async def lookup_join_token(join_token: str) -> GroupResponse:
    return _group_response(_get_group_service().find_by_join_token(join_token))


@app.post("/join", response_model=JoinResponse)
async def join_group(payload: JoinRequest) -> JoinResponse:
    service = _get_group_service()
    session, created = service.join(payload.join_token, payload.nickname, payload.device_token)
    group = _get_store().get_group(session.group_id)
    return JoinResponse(
        session=_session_response(session),
        group=_group_response(group),
        created=created,
    )


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str) -> SessionResponse:
    return _session_response(_get_store().get_session(session_id))


@app.get("/sessions/{session_id}/messages", response_model=list[Message])
async def list_session_messages(session_id: str, key_only: bool = Query(default=False)) -> list[Message]:
    return _get_store().list_messages(session_id, key_only=key_only)


@app.post("/sessions/{session_id}/messages", response_model=TurnResponse)
def send_message(session_id: str, payload: SendMessageRequest) -> TurnResponse:
    result = _get_turn_processor().process_turn(session_id, payload.body)
    return TurnResponse(
        participant_message=result.participant_message,
        reply=result.reply,
        session=_session_response(result.session),
        alert=result.alert,
        progress_changed=result.progress_changed,
        newly_completed=result.newly_completed,
        inference_failed=result.inference_failed,
    )


# -- subscriptions -------------------------------------------------------------


async def _stream_channel(websocket: WebSocket, channel: str) -> None:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    hub = _get_hub()

    def _deliver(event: dict[str, Any]) -> None:
        # Publishers run on worker threads; hand the event to this socket's loop.
        loop.call_soon_threadsafe(queue.put_nowait, event)

    subscription = hub.subscribe(channel, _deliver)
    try:
        await websocket.send_json({"type": "subscribed", "channel": channel})
        async with anyio.create_task_group() as task_group:

            async def _pump() -> None:
                try:
                    while True:
                        event = await queue.get()
                        await websocket.send_json(event)
                except Exception as exc:
                    if not isinstance(exc, WebSocketDisconnect):
                        logger.warning("subscription_closed channel=%s error=%s", channel, exc)
                task_group.cancel_scope.cancel()

            async def _receive() -> None:
                try:
                    while True:
                        raw = await websocket.receive_text()
                        if raw.strip().lower() == "ping":
                            await websocket.send_json({"type": "pong"})
                except WebSocketDisconnect:
                    pass
                task_group.cancel_scope.cancel()

            task_group.start_soon(_pump)
            task_group.start_soon(_receive)
    finally:
        hub.unsubscribe(subscription)


async def _reject_socket(websocket: WebSocket, detail: str) -> None:
    await websocket.send_json({"type": "error", "detail": detail})
    await websocket.close(code=1008)


@app.websocket("/ws/groups/{group_id}")
async def group_events_ws(websocket: WebSocket, group_id: str) -> None:
    await websocket.accept()
    try:
        _get_store().get_group(group_id)
    except NotFoundError as exc:
        await _reject_socket(websocket, exc.message)
        return
    await _stream_channel(websocket, group_channel(group_id))


@app.websocket("/ws/sessions/{session_id}")
async def session_events_ws(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    try:
        _get_store().get_session(session_id)
    except NotFoundError as exc:
        await _reject_socket(websocket, exc.message)
        return
    await _stream_channel(websocket, session_channel(session_id))
