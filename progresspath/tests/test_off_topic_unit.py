from conftest import make_group, make_session

from progresspath.tracking.off_topic import apply_verdict, classify_state, next_off_topic


def test_classify_state_follows_counter_and_alert() -> None:
    assert classify_state(0, alert_open=False) == "Clean"
    assert classify_state(1, alert_open=False) == "Warned"
    assert classify_state(2, alert_open=True) == "Escalated"
    assert classify_state(3, alert_open=False) == "Clean"


def test_next_off_topic_escalates_on_second_verdict() -> None:
    first = next_off_topic(counter=0, off_topic=True, alert_open=False)
    assert (first.counter, first.raise_alert) == (1, False)
    second = next_off_topic(counter=1, off_topic=True, alert_open=False)
    assert (second.counter, second.raise_alert) == (2, True)


def test_escalation_is_idempotent_while_alert_open(store) -> None:
    group = make_group(store)
    session = make_session(store, group)

    assert apply_verdict(store, session.id, True).alert is None
    escalated = apply_verdict(store, session.id, True)
    assert escalated.alert is not None
    assert escalated.session.off_topic_count == 2

    third = apply_verdict(store, session.id, True)
    assert third.alert is None
    assert third.session.off_topic_count == 3
    assert len(store.list_unresolved_alerts(group.id)) == 1
    current = store.get_session(session.id)
    assert current.active_alert is True
    assert current.alert_kind == "OffTopic"


def test_on_topic_reset_restarts_cycle_without_resolving_alert(store) -> None:
    group = make_group(store)
    session = make_session(store, group)

    apply_verdict(store, session.id, True)
    apply_verdict(store, session.id, True)
    reset = apply_verdict(store, session.id, False)
    assert reset.session.off_topic_count == 0
    assert reset.session.active_alert is True

    warned = apply_verdict(store, session.id, True)
    assert warned.session.off_topic_count == 1
    assert warned.alert is None


def test_off_topic_after_resolution_restarts_at_warning(store) -> None:
    group = make_group(store)
    session = make_session(store, group)

    apply_verdict(store, session.id, True)
    alert = apply_verdict(store, session.id, True).alert
    assert alert is not None
    resolution = store.resolve_alert(alert.id)
    assert resolution.session.active_alert is False

    warned = apply_verdict(store, session.id, True)
    assert warned.session.off_topic_count == 1
    assert warned.alert is None

    again = apply_verdict(store, session.id, True)
    assert again.alert is not None
    assert again.alert.id != alert.id
