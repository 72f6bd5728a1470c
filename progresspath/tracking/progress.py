from __future__ import annotations

"""
Monotonic progress and one-time completion.

Design intent:
- A proposal that does not raise progress is ignored, never an error.
- Completion is set in the same commit that reaches the terminal value.
- There is deliberately no "set progress" entry point.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from progresspath.internal_core.contracts import (
    BINARY_TERMINAL_PROGRESS,
    PERCENTAGE_TERMINAL_PROGRESS,
    GoalKind,
    ProgressOutcome,
)

if TYPE_CHECKING:
    from progresspath.internal_core.session_store import InMemorySessionStore

MIN_PROGRESS = 0
MAX_PROGRESS = 100


@dataclass(frozen=True)
class ProgressTransition:
    progress: int
    completed: bool
    newly_completed: bool


def terminal_progress(goal_kind: GoalKind) -> int:
    if goal_kind == "Binary":
        return BINARY_TERMINAL_PROGRESS
    return PERCENTAGE_TERMINAL_PROGRESS


def clamp_progress(value: int) -> int:
    return max(MIN_PROGRESS, min(MAX_PROGRESS, int(value)))


def next_progress(
    *,
    current: int,
    completed: bool,
    proposed: int,
    goal_kind: GoalKind,
) -> ProgressTransition | None:
    """Return the committed transition, or None when the proposal is a no-op."""

    if completed:
        return None
    terminal = terminal_progress(goal_kind)
    value = min(clamp_progress(proposed), terminal)
    if value <= current:
        return None
    reached = value >= terminal
    return ProgressTransition(progress=value, completed=reached, newly_completed=reached)


def apply_progress(
    store: "InMemorySessionStore",
    session_id: str,
    proposed: int,
) -> ProgressOutcome:
    return store.apply_progress(session_id, proposed)
