from conftest import make_group, make_session

from progresspath.tracking.progress import apply_progress, next_progress


def test_next_progress_ignores_non_increasing_proposals() -> None:
    assert next_progress(current=33, completed=False, proposed=20, goal_kind="Percentage") is None
    assert next_progress(current=33, completed=False, proposed=33, goal_kind="Percentage") is None


def test_next_progress_clamps_and_completes_in_one_step() -> None:
    transition = next_progress(current=66, completed=False, proposed=140, goal_kind="Percentage")
    assert transition is not None
    assert transition.progress == 100
    assert transition.completed is True
    assert transition.newly_completed is True


def test_next_progress_binary_terminal_value_is_one() -> None:
    transition = next_progress(current=0, completed=False, proposed=1, goal_kind="Binary")
    assert transition is not None
    assert (transition.progress, transition.completed) == (1, True)

    # Anything above the terminal value is capped at it.
    capped = next_progress(current=0, completed=False, proposed=100, goal_kind="Binary")
    assert capped is not None
    assert capped.progress == 1


def test_next_progress_is_frozen_after_completion() -> None:
    assert next_progress(current=100, completed=True, proposed=100, goal_kind="Percentage") is None


def test_apply_progress_is_monotonic(store) -> None:
    group = make_group(store)
    session = make_session(store, group)

    first = apply_progress(store, session.id, 33)
    assert first.changed is True
    assert first.session.progress == 33

    lower = apply_progress(store, session.id, 20)
    assert lower.changed is False
    assert lower.session.progress == 33

    higher = apply_progress(store, session.id, 66)
    assert higher.changed is True
    assert higher.session.progress == 66
    assert higher.session.completed is False


def test_apply_progress_completion_happens_exactly_once(store) -> None:
    group = make_group(store)
    session = make_session(store, group)

    done = apply_progress(store, session.id, 100)
    assert done.newly_completed is True
    assert done.session.completed is True

    again = apply_progress(store, session.id, 100)
    assert again.changed is False
    assert again.newly_completed is False
    assert store.get_session(session.id).completed is True
