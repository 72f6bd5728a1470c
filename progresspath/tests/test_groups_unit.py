import pytest
from conftest import EventRecorder, goal_json

from progresspath.internal_core.errors import ConflictError, InvalidInputError, NotFoundError
from progresspath.notify.hub import group_channel, session_channel
from progresspath.orchestration.alerts import resolve_alert
from progresspath.orchestration.groups import GroupService


def _service(store, gateway, notifier) -> GroupService:
    return GroupService(store, gateway, notifier, goal_max_chars=500)


def test_create_group_stores_interpretation_unconfirmed(store, gateway, notifier, backend) -> None:
    backend.queue(goal_json())
    group = _service(store, gateway, notifier).create_group("Period 3", "  Learn to add fractions ", "fac-1")
    assert group.confirmed is False
    assert group.goal_text == "Learn to add fractions"
    assert group.goal_kind == "Percentage"
    assert group.step_count == 3
    assert group.facilitator_id == "fac-1"
    assert [item.id for item in store.list_groups("fac-1")] == [group.id]


def test_create_group_validates_before_calling_gateway(store, gateway, notifier, backend) -> None:
    service = _service(store, gateway, notifier)
    with pytest.raises(InvalidInputError) as too_long:
        service.create_group("Period 3", "x" * 501)
    assert too_long.value.code == "goal_too_long"
    with pytest.raises(InvalidInputError):
        service.create_group("Period 3", "   ")
    assert backend.calls == []
    assert store.list_groups() == []


def test_reject_reinterprets_until_confirmed(store, gateway, notifier, backend) -> None:
    backend.queue(goal_json(), goal_json(goal_type="binary", steps=["Explain fractions"]))
    service = _service(store, gateway, notifier)
    group = service.create_group("Period 3", "Learn fractions")

    revised = service.reject_interpretation(group.id, "Explain what a fraction is")
    assert revised.id == group.id
    assert revised.join_token == group.join_token
    assert revised.goal_kind == "Binary"
    assert revised.step_count is None
    assert revised.confirmed is False

    service.confirm_group(group.id)
    with pytest.raises(ConflictError):
        service.reject_interpretation(group.id, "Something else")
    assert len(backend.calls) == 2


def test_join_requires_confirmed_group(store, gateway, notifier, backend) -> None:
    backend.queue(goal_json())
    service = _service(store, gateway, notifier)
    group = service.create_group("Period 3", "Learn fractions")

    with pytest.raises(ConflictError) as exc_info:
        service.join(group.join_token, "Robin", "dev-1")
    assert exc_info.value.code == "group_not_confirmed"
    with pytest.raises(NotFoundError):
        service.join("ZZZZZ", "Robin", "dev-1")


def test_join_posts_initial_guidance_once(store, gateway, notifier, hub, backend) -> None:
    backend.queue(goal_json(guidance="What is a numerator?"))
    service = _service(store, gateway, notifier)
    group = service.create_group("Period 3", "Learn fractions")
    service.confirm_group(group.id)
    recorder = EventRecorder()
    hub.subscribe(group_channel(group.id), recorder)

    session, created = service.join(group.join_token.lower(), "Robin", "dev-1")
    assert created is True
    assert [item.body for item in store.list_messages(session.id)] == ["What is a numerator?"]
    assert recorder.types == ["session_joined", "new_message"]

    restored, created_again = service.join(group.join_token, "Robin", "dev-1")
    assert created_again is False
    assert restored.id == session.id
    assert store.count_messages(session.id) == 1


def test_list_sessions_puts_alerts_first(store, gateway, notifier, backend, clock) -> None:
    backend.queue(goal_json())
    service = _service(store, gateway, notifier)
    group = service.confirm_group(service.create_group("Period 3", "Learn fractions").id)
    first, _ = service.join(group.join_token, "Robin", "dev-1")
    clock.advance(1)
    second, _ = service.join(group.join_token, "Sam", "dev-2")
    store.raise_alert(second.id, "OffTopic")

    assert [item.id for item in service.list_sessions(group.id)] == [second.id, first.id]


def test_resolve_alert_publishes_once(store, notifier, hub, gateway, backend) -> None:
    backend.queue(goal_json())
    service = _service(store, gateway, notifier)
    group = service.confirm_group(service.create_group("Period 3", "Learn fractions").id)
    session, _ = service.join(group.join_token, "Robin", "dev-1")
    alert = store.raise_alert(session.id, "Inactivity")
    group_events = EventRecorder()
    session_events = EventRecorder()
    hub.subscribe(group_channel(group.id), group_events)
    hub.subscribe(session_channel(session.id), session_events)

    resolve_alert(store, notifier, alert.id)
    resolve_alert(store, notifier, alert.id)

    assert group_events.types == ["alert_resolved"]
    assert group_events.events[0]["alert_id"] == alert.id
    assert group_events.events[0]["active_alert"] is False
    assert session_events.events == []
