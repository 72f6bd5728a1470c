from __future__ import annotations

import logging
from typing import List, Optional

from progresspath.inference.gateway import InferenceGateway
from progresspath.internal_core.contracts import Group, Message, ParticipantSession
from progresspath.internal_core.errors import ConflictError, InvalidInputError, NotFoundError
from progresspath.internal_core.session_store import InMemorySessionStore
from progresspath.notify.notifier import Notifier

logger = logging.getLogger(__name__)

NICKNAME_MAX_CHARS = 40
GROUP_NAME_MAX_CHARS = 120


def _require_text(value: str, code: str, label: str, max_chars: Optional[int] = None) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidInputError(code, f"{label} must not be empty.")
    if max_chars is not None and len(text) > max_chars:
        raise InvalidInputError(
            code.replace("empty", "too_long"),
            f"{label} must be {max_chars} characters or fewer.",
        )
    return text


class GroupService:
    """Group lifecycle: create, confirm or reject the goal interpretation, join."""

    def __init__(
        self,
        store: InMemorySessionStore,
        gateway: InferenceGateway,
        notifier: Notifier,
        *,
        goal_max_chars: int = 500,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._goal_max_chars = goal_max_chars

    def _validate_goal(self, goal_text: str) -> str:
        return _require_text(goal_text, "goal_empty", "Goal", self._goal_max_chars)

    def create_group(
        self, name: str, goal_text: str, facilitator_id: Optional[str] = None
    ) -> Group:
        name = _require_text(name, "group_name_empty", "Group name", GROUP_NAME_MAX_CHARS)
        goal_text = self._validate_goal(goal_text)
        interpretation = self._gateway.interpret_goal(goal_text)
        group = self._store.create_group(name, goal_text, interpretation, facilitator_id)
        logger.info(
            "group_created group_id=%s kind=%s steps=%s",
            group.id,
            group.goal_kind,
            len(group.steps),
        )
        return group

    def confirm_group(self, group_id: str) -> Group:
        group = self._store.confirm_group(group_id)
        logger.info("group_confirmed group_id=%s", group_id)
        return group

    def reject_interpretation(self, group_id: str, revised_goal_text: str) -> Group:
        goal_text = self._validate_goal(revised_goal_text)
        current = self._store.get_group(group_id)
        if current.confirmed:
            raise ConflictError(
                "group_already_confirmed",
                "The goal interpretation was already confirmed and can no longer be changed.",
            )
        interpretation = self._gateway.interpret_goal(goal_text)
        group = self._store.reinterpret_group(group_id, goal_text, interpretation)
        logger.info("group_reinterpreted group_id=%s kind=%s", group_id, group.goal_kind)
        return group

    def find_by_join_token(self, join_token: str) -> Group:
        group = self._store.find_group_by_join_token(join_token)
        if group is None:
            raise NotFoundError("group_not_found", "No group matches this join code.")
        return group

    def join(
        self, join_token: str, nickname: str, device_token: str
    ) -> tuple[ParticipantSession, bool]:
        nickname = _require_text(nickname, "nickname_empty", "Nickname", NICKNAME_MAX_CHARS)
        device_token = _require_text(device_token, "device_token_empty", "Device token")
        group = self.find_by_join_token(join_token)
        if not group.confirmed:
            raise ConflictError(
                "group_not_confirmed",
                "This group is not open yet. Please wait for the facilitator to confirm the goal.",
            )

        session, created = self._store.join_session(group.id, nickname, device_token)
        if not created:
            logger.info("session_restored session_id=%s group_id=%s", session.id, group.id)
            return session, False

        logger.info("session_joined session_id=%s group_id=%s", session.id, group.id)
        first_message: Optional[Message] = None
        opening = group.initial_guidance or group.welcome_message
        if opening:
            first_message = self._store.append_message(session.id, opening, "assistant")

        self._notifier.session_joined(session)
        if first_message is not None:
            self._notifier.new_message(group.id, first_message)
        return session, True

    def list_sessions(self, group_id: str) -> List[ParticipantSession]:
        """Alert-bearing sessions first, then by join order."""

        sessions = self._store.list_sessions(group_id)
        return sorted(sessions, key=lambda item: (not item.active_alert, item.joined_at))
