from __future__ import annotations

"""
Off-topic warning -> facilitator alert escalation.

Design intent:
- One warning before every escalation.
- An on-topic verdict resets the counter but never resolves an open alert.
- Alert resolution stays a facilitator action; the next off-topic verdict
  after a resolved escalation starts again at the warning stage.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from progresspath.internal_core.contracts import OffTopicOutcome

if TYPE_CHECKING:
    from progresspath.internal_core.session_store import InMemorySessionStore

OffTopicState = Literal["Clean", "Warned", "Escalated"]

ESCALATION_COUNT = 2


@dataclass(frozen=True)
class OffTopicTransition:
    counter: int
    raise_alert: bool


def classify_state(counter: int, alert_open: bool) -> OffTopicState:
    if counter >= ESCALATION_COUNT:
        # A resolved escalation behaves like a clean slate for the next verdict.
        return "Escalated" if alert_open else "Clean"
    if counter == 1:
        return "Warned"
    return "Clean"


def next_off_topic(*, counter: int, off_topic: bool, alert_open: bool) -> OffTopicTransition:
    if not off_topic:
        return OffTopicTransition(counter=0, raise_alert=False)
    if classify_state(counter, alert_open) == "Clean":
        counter = 0
    counter += 1
    return OffTopicTransition(
        counter=counter,
        raise_alert=counter == ESCALATION_COUNT and not alert_open,
    )


def apply_verdict(
    store: "InMemorySessionStore",
    session_id: str,
    off_topic: bool,
) -> OffTopicOutcome:
    return store.record_topic_verdict(session_id, off_topic)
