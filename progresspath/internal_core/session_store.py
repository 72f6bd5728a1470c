from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

from progresspath.tracking.off_topic import next_off_topic
from progresspath.tracking.progress import next_progress

from .contracts import (
    Alert,
    AlertKind,
    AlertResolution,
    GoalInterpretation,
    Group,
    Message,
    OffTopicOutcome,
    ParticipantSession,
    ProgressOutcome,
    Sender,
)
from .errors import ConflictError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

JOIN_TOKEN_LENGTH = 6
JOIN_TOKEN_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MAX_JOIN_TOKEN_ATTEMPTS = 10

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_join_token() -> str:
    return "".join(secrets.choice(JOIN_TOKEN_ALPHABET) for _ in range(JOIN_TOKEN_LENGTH))


def normalize_join_token(token: str) -> str:
    return (token or "").strip().upper()


def _nickname_key(nickname: str) -> str:
    return nickname.strip().casefold()


class InMemorySessionStore:
    """
    Single writer for groups, sessions, messages and alerts.

    Every public method is one atomic command under the store lock and returns
    copies, so callers never hold references to live records.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        join_token_factory: Optional[Callable[[], str]] = None,
    ):
        self._clock = clock or utc_now
        self._join_token_factory = join_token_factory or generate_join_token
        self._lock = RLock()
        self._seq = 0
        self._groups: Dict[str, Group] = {}
        self._group_by_token: Dict[str, str] = {}
        self._sessions: Dict[str, ParticipantSession] = {}
        self._sessions_by_group: Dict[str, List[str]] = {}
        self._session_by_device: Dict[Tuple[str, str], str] = {}
        self._session_by_nickname: Dict[Tuple[str, str], str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._message_session: Dict[str, str] = {}
        self._alerts: Dict[str, Alert] = {}
        self._alerts_by_session: Dict[str, List[str]] = {}

    def now(self) -> datetime:
        return self._clock()

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    # -- groups ---------------------------------------------------------

    def create_group(
        self,
        name: str,
        goal_text: str,
        interpretation: GoalInterpretation,
        facilitator_id: Optional[str] = None,
    ) -> Group:
        with self._lock:
            join_token = self._unique_join_token()
            group = Group(
                id=uuid.uuid4().hex,
                name=name,
                goal_text=goal_text,
                goal_kind=interpretation.goal_kind,
                step_count=interpretation.step_count,
                steps=list(interpretation.steps),
                welcome_message=interpretation.welcome_message,
                initial_guidance=interpretation.initial_guidance,
                confirmed=False,
                join_token=join_token,
                facilitator_id=facilitator_id,
                created_at=self.now(),
            )
            self._groups[group.id] = group
            self._group_by_token[join_token] = group.id
            self._sessions_by_group[group.id] = []
            return group.model_copy(deep=True)

    def _unique_join_token(self) -> str:
        for attempt in range(1, MAX_JOIN_TOKEN_ATTEMPTS + 1):
            token = normalize_join_token(self._join_token_factory())
            if token and token not in self._group_by_token:
                return token
            logger.debug(
                "join_token collision attempt=%s/%s", attempt, MAX_JOIN_TOKEN_ATTEMPTS
            )
        raise RuntimeError(
            f"Failed to generate a unique join token after {MAX_JOIN_TOKEN_ATTEMPTS} attempts."
        )

    def _require_group(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise NotFoundError("group_not_found", f"Unknown group_id: {group_id}")
        return group

    def get_group(self, group_id: str) -> Group:
        with self._lock:
            return self._require_group(group_id).model_copy(deep=True)

    def find_group_by_join_token(self, join_token: str) -> Optional[Group]:
        with self._lock:
            group_id = self._group_by_token.get(normalize_join_token(join_token))
            if group_id is None:
                return None
            return self._groups[group_id].model_copy(deep=True)

    def list_groups(self, facilitator_id: Optional[str] = None) -> List[Group]:
        with self._lock:
            groups = [
                group.model_copy(deep=True)
                for group in self._groups.values()
                if facilitator_id is None or group.facilitator_id == facilitator_id
            ]
        groups.sort(key=lambda item: item.created_at, reverse=True)
        return groups

    def confirm_group(self, group_id: str) -> Group:
        with self._lock:
            group = self._require_group(group_id)
            group.confirmed = True
            return group.model_copy(deep=True)

    def reinterpret_group(
        self, group_id: str, goal_text: str, interpretation: GoalInterpretation
    ) -> Group:
        with self._lock:
            group = self._require_group(group_id)
            if group.confirmed:
                raise ConflictError(
                    "group_already_confirmed",
                    "The goal interpretation was already confirmed and can no longer be changed.",
                )
            group.goal_text = goal_text
            group.goal_kind = interpretation.goal_kind
            group.step_count = interpretation.step_count
            group.steps = list(interpretation.steps)
            group.welcome_message = interpretation.welcome_message
            group.initial_guidance = interpretation.initial_guidance
            group.confirmed = False
            return group.model_copy(deep=True)

    # -- sessions -------------------------------------------------------

    def join_session(
        self, group_id: str, nickname: str, device_token: str
    ) -> Tuple[ParticipantSession, bool]:
        """Return (session, created). The same device always maps to the same session."""

        with self._lock:
            group = self._require_group(group_id)
            existing_id = self._session_by_device.get((group.id, device_token))
            if existing_id is not None:
                return self._sessions[existing_id].model_copy(deep=True), False

            nickname_key = (group.id, _nickname_key(nickname))
            if nickname_key in self._session_by_nickname:
                raise InvalidInputError(
                    "nickname_taken",
                    f"Nickname '{nickname}' is already taken in this group. Please choose a different nickname.",
                )

            session = ParticipantSession(
                id=uuid.uuid4().hex,
                group_id=group.id,
                nickname=nickname,
                device_token=device_token,
                joined_at=self.now(),
            )
            self._sessions[session.id] = session
            self._sessions_by_group[group.id].append(session.id)
            self._session_by_device[(group.id, device_token)] = session.id
            self._session_by_nickname[nickname_key] = session.id
            self._messages[session.id] = []
            self._alerts_by_session[session.id] = []
            return session.model_copy(deep=True), True

    def _require_session(self, session_id: str) -> ParticipantSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session_not_found", f"Unknown session_id: {session_id}")
        return session

    def get_session(self, session_id: str) -> ParticipantSession:
        with self._lock:
            return self._require_session(session_id).model_copy(deep=True)

    def list_sessions(self, group_id: str) -> List[ParticipantSession]:
        with self._lock:
            self._require_group(group_id)
            return [
                self._sessions[session_id].model_copy(deep=True)
                for session_id in self._sessions_by_group[group_id]
            ]

    def touch_activity(self, session_id: str) -> ParticipantSession:
        with self._lock:
            session = self._require_session(session_id)
            session.last_activity_at = self.now()
            session.inactivity_warning_at = None
            return session.model_copy(deep=True)

    def list_silent_sessions(self, silent_before: datetime) -> List[ParticipantSession]:
        """Non-completed sessions silent since `silent_before` with no open inactivity alert."""

        with self._lock:
            out: List[ParticipantSession] = []
            for session in self._sessions.values():
                if session.completed or session.silent_since > silent_before:
                    continue
                if self._open_alert(session.id, "Inactivity") is not None:
                    continue
                out.append(session.model_copy(deep=True))
            return out

    # -- messages -------------------------------------------------------

    def append_message(self, session_id: str, body: str, sender: Sender) -> Message:
        with self._lock:
            self._require_session(session_id)
            message = Message(
                id=uuid.uuid4().hex,
                session_id=session_id,
                seq=self._next_seq(),
                body=body,
                sender=sender,
                created_at=self.now(),
            )
            self._messages[session_id].append(message)
            self._message_session[message.id] = session_id
            return message.model_copy(deep=True)

    def classify_message(
        self, message_id: str, *, off_topic: bool, contributes_to_progress: bool
    ) -> Message:
        with self._lock:
            session_id = self._message_session.get(message_id)
            if session_id is None:
                raise NotFoundError("message_not_found", f"Unknown message_id: {message_id}")
            message = next(item for item in self._messages[session_id] if item.id == message_id)
            message.off_topic = bool(off_topic)
            message.contributes_to_progress = bool(contributes_to_progress)
            return message.model_copy(deep=True)

    def list_messages(self, session_id: str, key_only: bool = False) -> List[Message]:
        with self._lock:
            self._require_session(session_id)
            messages = [
                item.model_copy(deep=True)
                for item in self._messages[session_id]
                if not key_only or item.contributes_to_progress
            ]
        messages.sort(key=lambda item: (item.created_at, item.seq))
        return messages

    def count_messages(self, session_id: str) -> int:
        with self._lock:
            self._require_session(session_id)
            return len(self._messages[session_id])

    # -- progress / off-topic -------------------------------------------

    def apply_progress(self, session_id: str, proposed: int) -> ProgressOutcome:
        with self._lock:
            session = self._require_session(session_id)
            group = self._groups[session.group_id]
            transition = next_progress(
                current=session.progress,
                completed=session.completed,
                proposed=proposed,
                goal_kind=group.goal_kind,
            )
            if transition is None:
                logger.debug(
                    "progress_ignored session_id=%s current=%s proposed=%s completed=%s",
                    session_id,
                    session.progress,
                    proposed,
                    session.completed,
                )
                return ProgressOutcome(session=session.model_copy(deep=True))

            previous = session.progress
            session.progress = transition.progress
            session.completed = transition.completed
            logger.info(
                "progress_committed session_id=%s progress=%s->%s completed=%s",
                session_id,
                previous,
                transition.progress,
                transition.completed,
            )
            return ProgressOutcome(
                session=session.model_copy(deep=True),
                changed=True,
                newly_completed=transition.newly_completed,
            )

    def record_topic_verdict(self, session_id: str, off_topic: bool) -> OffTopicOutcome:
        with self._lock:
            session = self._require_session(session_id)
            transition = next_off_topic(
                counter=session.off_topic_count,
                off_topic=off_topic,
                alert_open=self._open_alert(session_id, "OffTopic") is not None,
            )
            session.off_topic_count = transition.counter
            alert = None
            if transition.raise_alert:
                alert = self.raise_alert(session_id, "OffTopic")
            return OffTopicOutcome(session=session.model_copy(deep=True), alert=alert)

    # -- alerts ---------------------------------------------------------

    def _open_alert(self, session_id: str, kind: AlertKind) -> Optional[Alert]:
        for alert_id in self._alerts_by_session.get(session_id, []):
            alert = self._alerts[alert_id]
            if alert.kind == kind and not alert.resolved:
                return alert
        return None

    def has_open_alert(self, session_id: str, kind: AlertKind) -> bool:
        with self._lock:
            self._require_session(session_id)
            return self._open_alert(session_id, kind) is not None

    def raise_alert(self, session_id: str, kind: AlertKind) -> Optional[Alert]:
        """
        Create an unresolved alert; None when one of this kind is already open,
        or for an Inactivity alert on a session that has completed in the meantime.
        """

        with self._lock:
            session = self._require_session(session_id)
            if kind == "Inactivity" and session.completed:
                logger.debug("alert_skipped session_id=%s kind=%s reason=completed", session_id, kind)
                return None
            if self._open_alert(session_id, kind) is not None:
                logger.debug("alert_exists session_id=%s kind=%s", session_id, kind)
                return None
            now = self.now()
            alert = Alert(
                id=uuid.uuid4().hex,
                session_id=session_id,
                group_id=session.group_id,
                kind=kind,
                created_at=now,
            )
            self._alerts[alert.id] = alert
            self._alerts_by_session[session_id].append(alert.id)
            session.active_alert = True
            session.alert_kind = kind
            if kind == "Inactivity":
                session.inactivity_warning_at = now
            logger.info(
                "alert_raised alert_id=%s session_id=%s kind=%s", alert.id, session_id, kind
            )
            return alert.model_copy(deep=True)

    def get_alert(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("alert_not_found", f"Unknown alert_id: {alert_id}")
            return alert.model_copy(deep=True)

    def resolve_alert(self, alert_id: str) -> AlertResolution:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("alert_not_found", f"Unknown alert_id: {alert_id}")
            session = self._sessions[alert.session_id]
            if alert.resolved:
                return AlertResolution(
                    alert=alert.model_copy(deep=True),
                    session=session.model_copy(deep=True),
                )

            alert.resolved = True
            alert.resolved_at = self.now()
            remaining = [
                self._alerts[item]
                for item in self._alerts_by_session[session.id]
                if not self._alerts[item].resolved
            ]
            session.active_alert = bool(remaining)
            session.alert_kind = remaining[0].kind if remaining else None
            logger.info(
                "alert_resolved alert_id=%s session_id=%s kind=%s remaining=%s",
                alert_id,
                session.id,
                alert.kind,
                len(remaining),
            )
            return AlertResolution(
                alert=alert.model_copy(deep=True),
                session=session.model_copy(deep=True),
                changed=True,
            )

    def list_unresolved_alerts(self, group_id: str) -> List[Alert]:
        with self._lock:
            self._require_group(group_id)
            alerts = [
                alert.model_copy(deep=True)
                for alert in self._alerts.values()
                if alert.group_id == group_id and not alert.resolved
            ]
        alerts.sort(key=lambda item: item.created_at, reverse=True)
        return alerts
