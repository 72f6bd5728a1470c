from __future__ import annotations

"""
One participant message, end to end.

Design intent:
- The participant message is persisted and activity is recorded before the
  model is called; neither is rolled back.
- A gateway failure leaves progress, off-topic state and the message's
  classification untouched and answers with a fixed assistant message.
- Fan-out happens only after the store has committed: messages first, then a
  new alert, then the progress change.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from progresspath.inference.gateway import InferenceGateway, InferenceGatewayError
from progresspath.inference.history import TurnContext, split_history, to_history
from progresspath.internal_core.contracts import Alert, GoalKind, Message, ParticipantSession
from progresspath.internal_core.errors import ConflictError, InvalidInputError
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.notifier import Notifier
from progresspath.tracking import off_topic, progress

logger = logging.getLogger(__name__)

ASSISTANT_ERROR_MESSAGE = "Sorry, I'm having trouble responding right now. Please try again in a moment."

MESSAGE_MAX_CHARS = 4000


@dataclass(frozen=True)
class TurnResult:
    participant_message: Message
    reply: Message
    session: ParticipantSession
    alert: Optional[Alert] = None
    progress_changed: bool = False
    newly_completed: bool = False
    inference_failed: bool = False


def _preview(text: str, limit: int = 40) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[:limit] + "..."


class TurnProcessor:
    def __init__(
        self,
        store: InMemorySessionStore,
        gateway: InferenceGateway,
        notifier: Notifier,
        *,
        history_max_messages: int = 50,
        history_max_tokens: int = 8000,
        history_tail_messages: int = 40,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._history_max_messages = history_max_messages
        self._history_max_tokens = history_max_tokens
        self._history_tail_messages = history_tail_messages

    def process_turn(self, session_id: str, body: str) -> TurnResult:
        text = (body or "").strip()
        if not text:
            raise InvalidInputError("message_empty", "Message must not be empty.")
        if len(text) > MESSAGE_MAX_CHARS:
            raise InvalidInputError(
                "message_too_long", f"Message must be {MESSAGE_MAX_CHARS} characters or fewer."
            )
        session = self._store.get_session(session_id)
        if session.completed:
            raise ConflictError(
                "session_completed",
                "This goal is already complete. No further messages are accepted.",
            )
        group = self._store.get_group(session.group_id)

        participant_message = self._store.append_message(session_id, text, "participant")
        session = self._store.touch_activity(session_id)
        logger.debug(
            "turn_received session_id=%s message_id=%s preview=%r",
            session_id,
            participant_message.id,
            _preview(text),
        )
        self._notifier.new_message(group.id, participant_message)
        if self._store.has_open_alert(session_id, "Inactivity"):
            self._notifier.activity_resumed(group.id, session.nickname)

        context = self._build_context(session, group.goal_text, group.goal_kind, group.steps)
        try:
            verdict = self._gateway.evaluate_turn(context)
        except InferenceGatewayError as exc:
            logger.warning("turn_inference_failed session_id=%s error=%s", session_id, exc)
            reply = self._store.append_message(session_id, ASSISTANT_ERROR_MESSAGE, "assistant")
            self._notifier.new_message(group.id, reply)
            return TurnResult(
                participant_message=participant_message,
                reply=reply,
                session=self._store.get_session(session_id),
                inference_failed=True,
            )

        reply = self._store.append_message(session_id, verdict.guidance, "assistant")
        participant_message = self._store.classify_message(
            participant_message.id,
            off_topic=verdict.off_topic,
            contributes_to_progress=verdict.significant,
        )
        topic_outcome = off_topic.apply_verdict(self._store, session_id, verdict.off_topic)
        progress_outcome = progress.apply_progress(self._store, session_id, verdict.progress)
        if progress_outcome.newly_completed:
            logger.info("session_completed session_id=%s group_id=%s", session_id, group.id)

        self._notifier.new_message(group.id, participant_message)
        self._notifier.new_message(group.id, reply)
        if topic_outcome.alert is not None:
            self._notifier.alert_raised(topic_outcome.alert, session.nickname)
        if progress_outcome.changed:
            self._notifier.progress(progress_outcome.session, group.terminal_progress)

        return TurnResult(
            participant_message=participant_message,
            reply=reply,
            session=self._store.get_session(session_id),
            alert=topic_outcome.alert,
            progress_changed=progress_outcome.changed,
            newly_completed=progress_outcome.newly_completed,
        )

    def _build_context(
        self, session: ParticipantSession, goal_text: str, goal_kind: GoalKind, steps: List[str]
    ) -> TurnContext:
        history = to_history(self._store.list_messages(session.id))
        window = split_history(
            history,
            max_messages=self._history_max_messages,
            max_tokens=self._history_max_tokens,
            tail_messages=self._history_tail_messages,
        )
        summary = None
        if window.needs_summary:
            logger.debug(
                "history_summarized session_id=%s older=%s recent=%s",
                session.id,
                len(window.older),
                len(window.recent),
            )
            summary = self._gateway.summarize(window.older)
        return TurnContext(
            goal_text=goal_text,
            goal_kind=goal_kind,
            steps=list(steps),
            progress=session.progress,
            terminal_progress=progress.terminal_progress(goal_kind),
            off_topic_count=session.off_topic_count,
            history=window.recent,
            summary=summary,
        )
