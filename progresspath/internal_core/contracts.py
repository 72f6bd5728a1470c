from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

GoalKind = Literal["Binary", "Percentage"]
AlertKind = Literal["OffTopic", "Inactivity"]
Sender = Literal["participant", "assistant", "system"]

BINARY_TERMINAL_PROGRESS = 1
PERCENTAGE_TERMINAL_PROGRESS = 100


class GoalInterpretation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    goal_kind: GoalKind
    steps: List[str] = Field(default_factory=list)
    welcome_message: str = ""
    initial_guidance: str = ""

    @property
    def step_count(self) -> Optional[int]:
        if self.goal_kind == "Binary":
            return None
        return len(self.steps)


class Group(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    goal_text: str
    goal_kind: GoalKind
    step_count: Optional[int] = None
    steps: List[str] = Field(default_factory=list)
    welcome_message: str = ""
    initial_guidance: str = ""
    confirmed: bool = False
    join_token: str
    facilitator_id: Optional[str] = None
    created_at: datetime

    @property
    def terminal_progress(self) -> int:
        if self.goal_kind == "Binary":
            return BINARY_TERMINAL_PROGRESS
        return PERCENTAGE_TERMINAL_PROGRESS


class ParticipantSession(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    group_id: str
    nickname: str
    device_token: str
    progress: int = 0
    completed: bool = False
    off_topic_count: int = 0
    active_alert: bool = False
    alert_kind: Optional[AlertKind] = None
    last_activity_at: Optional[datetime] = None
    joined_at: datetime
    inactivity_warning_at: Optional[datetime] = None

    @property
    def silent_since(self) -> datetime:
        return self.last_activity_at or self.joined_at


class Message(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    seq: int
    body: str
    sender: Sender
    contributes_to_progress: bool = False
    off_topic: bool = False
    created_at: datetime


class Alert(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    group_id: str
    kind: AlertKind
    resolved: bool = False
    created_at: datetime
    resolved_at: Optional[datetime] = None


class ProgressOutcome(BaseModel):
    """Result of one progress proposal against the store."""

    model_config = ConfigDict(extra="forbid")

    session: ParticipantSession
    changed: bool = False
    newly_completed: bool = False


class OffTopicOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session: ParticipantSession
    alert: Optional[Alert] = None


class AlertResolution(BaseModel):
    model_config = ConfigDict(extra="forbid")

    alert: Alert
    session: ParticipantSession
    changed: bool = False
