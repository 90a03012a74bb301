"""Unit tests for work unit status transitions."""

import itertools

import pytest

from laneledger.core.state_machine import (
    ALL_STATUSES,
    TransitionError,
    assert_transition,
    is_legal_transition,
    legal_targets,
)

pytestmark = pytest.mark.timeout(5)

LEGAL = {
    ("ready", "in_progress"),
    ("in_progress", "blocked"),
    ("in_progress", "waiting"),
    ("in_progress", "done"),
    ("in_progress", "ready"),
    ("blocked", "in_progress"),
    ("blocked", "done"),
    ("waiting", "in_progress"),
    ("waiting", "done"),
}


@pytest.mark.parametrize(("current", "target"), list(itertools.product(ALL_STATUSES, repeat=2)))
def test_assert_transition_accepts_exactly_the_table(current: str, target: str) -> None:
    if (current, target) in LEGAL:
        assert_transition(current, target, "WU-1")
        assert is_legal_transition(current, target)
    else:
        with pytest.raises(TransitionError):
            assert_transition(current, target, "WU-1")
        assert not is_legal_transition(current, target)


def test_transition_error_names_id_current_and_target() -> None:
    with pytest.raises(TransitionError) as exc:
        assert_transition("ready", "done", "WU-42")

    assert exc.value.wu_id == "WU-42"
    assert exc.value.current == "ready"
    assert exc.value.target == "done"
    assert "WU-42" in str(exc.value)
    assert "ready -> done" in str(exc.value)


def test_done_is_terminal() -> None:
    assert legal_targets("done") == frozenset()
    with pytest.raises(TransitionError, match="terminal"):
        assert_transition("done", "in_progress", "WU-7")


def test_unknown_statuses_are_rejected() -> None:
    with pytest.raises(TransitionError, match="unknown current status"):
        assert_transition(None, "in_progress", "WU-1")
    with pytest.raises(TransitionError, match="unknown target status"):
        assert_transition("ready", "archived", "WU-1")
