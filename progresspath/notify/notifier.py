from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from progresspath.internal_core.contracts import (
    Alert,
    AlertKind,
    Message,
    ParticipantSession,
    Sender,
)

from .hub import NotificationHub, group_channel, session_channel

logger = logging.getLogger(__name__)


class MessageEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["new_message"] = "new_message"
    session_id: str
    message_id: str
    seq: int
    body: str
    sender: Sender
    off_topic: bool
    contributes_to_progress: bool
    created_at: datetime


class ProgressEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["progress_update"] = "progress_update"
    session_id: str
    progress: int
    terminal_progress: int
    completed: bool


class AlertRaisedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["alert_raised"] = "alert_raised"
    alert_id: str
    session_id: str
    kind: AlertKind
    nickname: str
    created_at: datetime


class AlertResolvedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["alert_resolved"] = "alert_resolved"
    alert_id: str
    session_id: str
    active_alert: bool
    alert_kind: Optional[AlertKind] = None


class SessionJoinedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["session_joined"] = "session_joined"
    session_id: str
    nickname: str
    progress: int
    completed: bool
    joined_at: datetime


class ActivityResumedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["activity_resumed"] = "activity_resumed"
    nickname: str


class Notifier:
    """Turns committed state changes into events on group and session channels."""

    def __init__(self, hub: NotificationHub) -> None:
        self._hub = hub

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    def _publish_group(self, group_id: str, event: BaseModel) -> None:
        self._hub.publish(group_channel(group_id), event.model_dump(mode="json"))

    def _publish_session(self, session_id: str, event: BaseModel) -> None:
        self._hub.publish(session_channel(session_id), event.model_dump(mode="json"))

    def new_message(self, group_id: str, message: Message) -> None:
        event = MessageEvent(
            session_id=message.session_id,
            message_id=message.id,
            seq=message.seq,
            body=message.body,
            sender=message.sender,
            off_topic=message.off_topic,
            contributes_to_progress=message.contributes_to_progress,
            created_at=message.created_at,
        )
        self._publish_group(group_id, event)
        self._publish_session(message.session_id, event)
        logger.debug(
            "notified new_message group_id=%s session_id=%s message_id=%s",
            group_id,
            message.session_id,
            message.id,
        )

    def progress(self, session: ParticipantSession, terminal_progress: int) -> None:
        event = ProgressEvent(
            session_id=session.id,
            progress=session.progress,
            terminal_progress=terminal_progress,
            completed=session.completed,
        )
        self._publish_group(session.group_id, event)
        self._publish_session(session.id, event)

    def alert_raised(self, alert: Alert, nickname: str) -> None:
        event = AlertRaisedEvent(
            alert_id=alert.id,
            session_id=alert.session_id,
            kind=alert.kind,
            nickname=nickname,
            created_at=alert.created_at,
        )
        self._publish_group(alert.group_id, event)
        logger.info(
            "notified alert_raised group_id=%s alert_id=%s kind=%s",
            alert.group_id,
            alert.id,
            alert.kind,
        )

    def alert_resolved(self, alert: Alert, session: ParticipantSession) -> None:
        event = AlertResolvedEvent(
            alert_id=alert.id,
            session_id=session.id,
            active_alert=session.active_alert,
            alert_kind=session.alert_kind,
        )
        self._publish_group(alert.group_id, event)

    def session_joined(self, session: ParticipantSession) -> None:
        event = SessionJoinedEvent(
            session_id=session.id,
            nickname=session.nickname,
            progress=session.progress,
            completed=session.completed,
            joined_at=session.joined_at,
        )
        self._publish_group(session.group_id, event)

    def activity_resumed(self, group_id: str, nickname: str) -> None:
        self._publish_group(group_id, ActivityResumedEvent(nickname=nickname))
