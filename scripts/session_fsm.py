"""Session state machine: typed transitions, deadlines, listeners.

States:
  IDLE → NAVIGATING → IDLE              (happy path)
  NAVIGATING → STUCK → RELOADING → IDLE (watchdog)
  IDLE → BACKOFF → IDLE                 (rate limit)
  * → RELOADING                         (fatal signal, scheduled reload)
  RELOADING → TERMINATED                (reload failed for good)

RELOADING and TERMINATED are entered with a forced transition from any
state. Deadlines come from Config.FSM_DEADLINES; a NAVIGATING state older
than its deadline is what the watchdog reports as stuck.
"""

from __future__ import annotations

import logging
from typing import Callable

from clock import SYSTEM_CLOCK, Clock
from config import Config
from errors import create_error
from models import FSMState, NavigationState, SessionStateName

log = logging.getLogger(__name__)

# Type alias for state change listeners
StateChangeListener = Callable[[FSMState, FSMState], None]

VALID_TRANSITIONS: dict[SessionStateName, list[SessionStateName]] = {
    SessionStateName.IDLE: [
        SessionStateName.NAVIGATING,
        SessionStateName.BACKOFF,
    ],
    SessionStateName.NAVIGATING: [
        SessionStateName.IDLE,
        SessionStateName.STUCK,
    ],
    SessionStateName.STUCK: [],
    SessionStateName.BACKOFF: [
        SessionStateName.IDLE,
        SessionStateName.NAVIGATING,
    ],
    SessionStateName.RELOADING: [
        SessionStateName.IDLE,
        SessionStateName.NAVIGATING,
    ],
    SessionStateName.TERMINATED: [],
}


def is_valid_transition(from_state: SessionStateName, to_state: SessionStateName) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


class SessionFSM:
    """Session state machine with validated transitions and deadlines.

    Usage:
        fsm = SessionFSM(clock)
        fsm.subscribe(my_listener)
        fsm.to_navigating()
        fsm.to_idle()
    """

    def __init__(self, clock: Clock = SYSTEM_CLOCK) -> None:
        self._clock = clock
        self._state = FSMState(name=SessionStateName.IDLE, since_ms=clock.now_ms())
        self._listeners: list[StateChangeListener] = []

    @property
    def state(self) -> FSMState:
        return self._state

    @property
    def state_name(self) -> SessionStateName:
        return self._state.name

    @property
    def epoch(self) -> int:
        return self._state.epoch

    @property
    def navigation(self) -> NavigationState:
        if self._state.name == SessionStateName.STUCK:
            return NavigationState.STUCK
        if self._state.name == SessionStateName.NAVIGATING:
            return (
                NavigationState.STUCK if self.is_deadline_exceeded()
                else NavigationState.NAVIGATING
            )
        return NavigationState.IDLE

    def subscribe(self, listener: StateChangeListener) -> Callable[[], None]:
        """Register a state change listener. Returns unsubscribe function."""
        self._listeners.append(listener)

        def unsub() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsub

    def is_terminal(self) -> bool:
        return self._state.name == SessionStateName.TERMINATED

    def elapsed_ms(self) -> int:
        return self._clock.now_ms() - self._state.since_ms

    def is_deadline_exceeded(self) -> bool:
        if self._state.deadline_ms is None:
            return False
        return self.elapsed_ms() >= self._state.deadline_ms

    # -- Transitions (validated) ------------------------------------------

    def to_idle(self) -> None:
        self._transition(SessionStateName.IDLE)

    def to_navigating(self) -> None:
        self._transition(SessionStateName.NAVIGATING)

    def to_stuck(self) -> None:
        self._transition(SessionStateName.STUCK)

    def to_backoff(self) -> None:
        self._transition(SessionStateName.BACKOFF)

    # -- Force transitions (any-state entry) ------------------------------

    def to_reloading(self) -> None:
        """Force transition to RELOADING from any state; starts a new epoch."""
        self._force_transition(SessionStateName.RELOADING, bump=True)

    def to_terminated(self) -> None:
        self._force_transition(SessionStateName.TERMINATED)

    # -- Internals --------------------------------------------------------

    def _transition(self, to: SessionStateName) -> None:
        prev = self._state
        if prev.name == to:
            return
        if not is_valid_transition(prev.name, to):
            raise create_error(
                "INVALID_TRANSITION",
                f"Invalid transition: {prev.name.value} → {to.value}",
                at_state=prev.name,
            )
        self._set_state(to, prev.epoch)
        self._notify(prev)

    def _force_transition(self, to: SessionStateName, bump: bool = False) -> None:
        prev = self._state
        self._set_state(to, prev.epoch + 1 if bump else prev.epoch)
        self._notify(prev)

    def _set_state(self, name: SessionStateName, epoch: int) -> None:
        self._state = FSMState(
            name=name,
            since_ms=self._clock.now_ms(),
            deadline_ms=Config.FSM_DEADLINES.get(name.value),
            epoch=epoch,
        )

    def _notify(self, prev: FSMState) -> None:
        for listener in self._listeners:
            try:
                listener(self._state, prev)
            except Exception:
                log.exception("State listener failed on %s → %s",
                              prev.name.value, self._state.name.value)
