"""
Goal lifecycle — the transition table every goal mutation is checked against.

Pure and side-effect free: callers validate with assert_transition() and
then perform the mutation themselves.
"""

from __future__ import annotations

from features.goals.models import GoalState

TRANSITIONS: dict[GoalState, tuple[GoalState, ...]] = {
    GoalState.DRAFT: (GoalState.PLANNED, GoalState.CANCELLED),
    GoalState.PLANNED: (GoalState.EXECUTING, GoalState.CANCELLED),
    GoalState.EXECUTING: (
        GoalState.VERIFYING,
        GoalState.NEEDS_USER_INPUT,
        GoalState.FAILED,
        GoalState.CANCELLED,
    ),
    GoalState.NEEDS_USER_INPUT: (GoalState.EXECUTING, GoalState.FAILED, GoalState.CANCELLED),
    GoalState.VERIFYING: (GoalState.READY_TO_MERGE, GoalState.FAILED, GoalState.CANCELLED),
    GoalState.READY_TO_MERGE: (GoalState.MERGED, GoalState.CANCELLED),
    GoalState.FAILED: (GoalState.EXECUTING, GoalState.CANCELLED),
    GoalState.MERGED: (),
    GoalState.CANCELLED: (),
}


class GoalStateError(ValueError):
    pass


class UnknownState(GoalStateError):
    def __init__(self, state):
        self.state = state
        super().__init__(f"Unknown goal state: {state!r}")


class InvalidTransition(GoalStateError):
    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid goal transition from {from_state} to {to_state}")


def is_goal_state(value) -> bool:
    try:
        GoalState(value)
    except ValueError:
        return False
    return True


def _coerce(state) -> GoalState:
    try:
        return GoalState(state)
    except ValueError:
        raise UnknownState(state) from None


def allowed_transitions(state) -> list[str]:
    """States reachable from `state` in one step."""
    return [s.value for s in TRANSITIONS[_coerce(state)]]


def assert_transition(from_state, to_state) -> None:
    """Raise UnknownState / InvalidTransition unless from -> to is allowed."""
    src = _coerce(from_state)
    dst = _coerce(to_state)
    if dst not in TRANSITIONS[src]:
        raise InvalidTransition(src.value, dst.value)


def is_terminal(state) -> bool:
    return not TRANSITIONS[_coerce(state)]
