import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import pytest

from progresspath.inference.gateway import InferenceBackend, InferenceGateway
from progresspath.internal_core.contracts import GoalInterpretation, Group, ParticipantSession
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.hub import NotificationHub
from progresspath.notify.notifier import Notifier


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class ScriptedBackend(InferenceBackend):
    """Returns queued replies in order; an Exception in the queue is raised instead."""

    def __init__(self, replies: Optional[list[Union[str, Exception]]] = None) -> None:
        self.replies: list[Union[str, Exception]] = list(replies or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *replies: Union[str, Exception]) -> None:
        self.replies.extend(replies)

    def complete(self, messages, *, json_output: bool, max_tokens: int) -> str:
        self.calls.append({"messages": list(messages), "json_output": json_output})
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def name(self) -> str:
        return "scripted"


def verdict_json(
    message: str = "What do you think comes next?",
    progress: Optional[float] = 0,
    off_topic: bool = False,
    significant: bool = False,
) -> str:
    payload: dict[str, Any] = {
        "message": message,
        "isOffTopic": off_topic,
        "significantProgress": significant,
    }
    if progress is not None:
        payload["overallProgress"] = progress
    return json.dumps(payload)


def goal_json(
    goal_type: str = "percentage",
    steps: Optional[list[str]] = None,
    welcome: str = "Welcome to fractions!",
    guidance: str = "What is a numerator?",
) -> str:
    return json.dumps(
        {
            "goalType": goal_type,
            "steps": ["Define a fraction", "Add fractions", "Simplify fractions"] if steps is None else steps,
            "welcomeMessage": welcome,
            "initialGuidance": guidance,
        }
    )


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [item["type"] for item in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def hub() -> NotificationHub:
    return NotificationHub()


@pytest.fixture
def notifier(hub: NotificationHub) -> Notifier:
    return Notifier(hub)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def gateway(backend: ScriptedBackend, sleeps: list[float]) -> InferenceGateway:
    return InferenceGateway(backend, max_attempts=3, backoff_sec=1.0, sleep=sleeps.append)


def make_group(
    store: InMemorySessionStore,
    *,
    goal_kind: str = "Percentage",
    steps: Optional[list[str]] = None,
    confirmed: bool = True,
) -> Group:
    if steps is None:
        steps = ["Define a fraction", "Add fractions", "Simplify fractions"] if goal_kind == "Percentage" else []
    interpretation = GoalInterpretation(
        goal_kind=goal_kind,
        steps=steps,
        welcome_message="Welcome!",
        initial_guidance="Where would you like to start?",
    )
    group = store.create_group("Period 3", "Learn to add fractions", interpretation)
    if confirmed:
        group = store.confirm_group(group.id)
    return group


def make_session(
    store: InMemorySessionStore, group: Group, nickname: str = "Robin", device_token: str = "dev-1"
) -> ParticipantSession:
    session, _ = store.join_session(group.id, nickname, device_token)
    return session
