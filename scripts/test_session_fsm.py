"""Session FSM tests."""

import pytest

from config import Config
from errors import SessionError
from models import NavigationState, SessionStateName
from session_fsm import VALID_TRANSITIONS, SessionFSM, is_valid_transition


@pytest.fixture
def fsm(clock):
    return SessionFSM(clock)


def test_starts_idle(fsm):
    assert fsm.state_name == SessionStateName.IDLE
    assert fsm.navigation == NavigationState.IDLE
    assert fsm.epoch == 0


def test_happy_path(fsm):
    fsm.to_navigating()
    assert fsm.navigation == NavigationState.NAVIGATING
    fsm.to_idle()
    assert fsm.state_name == SessionStateName.IDLE


def test_invalid_transition_raises(fsm):
    with pytest.raises(SessionError) as exc:
        fsm.to_stuck()
    assert exc.value.code == "INVALID_TRANSITION"
    assert fsm.state_name == SessionStateName.IDLE


def test_same_state_is_noop(fsm, clock):
    fsm.to_navigating()
    since = fsm.state.since_ms
    clock.advance(5_000)
    fsm.to_navigating()
    assert fsm.state.since_ms == since


def test_navigating_deadline(fsm, clock):
    fsm.to_navigating()
    assert fsm.state.deadline_ms == Config.FSM_DEADLINES["NAVIGATING"] == 15_000

    clock.advance(14_999)
    assert not fsm.is_deadline_exceeded()
    assert fsm.navigation == NavigationState.NAVIGATING

    clock.advance(1)
    assert fsm.is_deadline_exceeded()
    assert fsm.navigation == NavigationState.STUCK


def test_idle_has_no_deadline(fsm, clock):
    clock.advance(10 * 60_000)
    assert not fsm.is_deadline_exceeded()


def test_stuck_leaves_only_by_force(fsm):
    fsm.to_navigating()
    fsm.to_stuck()
    assert fsm.navigation == NavigationState.STUCK
    with pytest.raises(SessionError):
        fsm.to_idle()
    fsm.to_reloading()
    assert fsm.state_name == SessionStateName.RELOADING


def test_reloading_bumps_epoch(fsm):
    fsm.to_reloading()
    assert fsm.epoch == 1
    fsm.to_idle()
    fsm.to_reloading()
    assert fsm.epoch == 2


def test_backoff_round_trip(fsm):
    fsm.to_backoff()
    fsm.to_idle()
    assert fsm.state_name == SessionStateName.IDLE


def test_terminated_is_terminal(fsm):
    fsm.to_reloading()
    fsm.to_terminated()
    assert fsm.is_terminal()
    for target in SessionStateName:
        if target != SessionStateName.TERMINATED:
            assert not is_valid_transition(SessionStateName.TERMINATED, target)
    assert VALID_TRANSITIONS[SessionStateName.TERMINATED] == []


def test_listeners_and_unsubscribe(fsm):
    seen = []
    unsub = fsm.subscribe(lambda new, prev: seen.append((prev.name, new.name)))
    fsm.to_navigating()
    unsub()
    fsm.to_idle()
    assert seen == [(SessionStateName.IDLE, SessionStateName.NAVIGATING)]


def test_failing_listener_does_not_block_transition(fsm, caplog):
    def boom(new, prev):
        raise RuntimeError("listener bug")

    fsm.subscribe(boom)
    fsm.to_navigating()
    assert fsm.state_name == SessionStateName.NAVIGATING
    assert "State listener failed" in caplog.text
