from __future__ import annotations

import math
from typing import Sequence

from progresspath.internal_core.contracts import GoalInterpretation

MAX_STAGES = 10
MIN_PERCENTAGE_STEPS = 2
DEFAULT_WELCOME = "Welcome! Let's work on your learning goal together."


def group_steps_into_stages(steps: Sequence[str], max_stages: int = MAX_STAGES) -> list[str]:
    items = list(steps)
    if len(items) <= max_stages:
        return items
    per_stage = math.ceil(len(items) / max_stages)
    stages: list[str] = []
    for index in range(max_stages):
        chunk = items[index * per_stage : (index + 1) * per_stage]
        if chunk:
            stages.append(f"Stage {index + 1}: {'; '.join(chunk)}")
    return stages


def normalize_interpretation(
    *,
    goal_type: str,
    steps: Sequence[str],
    welcome_message: str = "",
    initial_guidance: str = "",
) -> GoalInterpretation:
    """
    Apply the goal-shape rules to a raw interpretation.

    - more than 10 steps are grouped into 10 stages
    - a percentage goal needs at least 2 steps, otherwise it is binary
    - a single step is always binary
    """

    cleaned = [str(item).strip() for item in steps if str(item or "").strip()]
    cleaned = group_steps_into_stages(cleaned)

    goal_kind = "Percentage" if str(goal_type or "").strip().lower() == "percentage" else "Binary"
    if goal_kind == "Percentage" and len(cleaned) < MIN_PERCENTAGE_STEPS:
        goal_kind = "Binary"

    return GoalInterpretation(
        goal_kind=goal_kind,
        steps=cleaned,
        welcome_message=str(welcome_message or "").strip() or DEFAULT_WELCOME,
        initial_guidance=str(initial_guidance or "").strip(),
    )
