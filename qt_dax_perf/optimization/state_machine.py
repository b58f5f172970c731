"""Optimization controller states and the transitions allowed between them."""

from __future__ import annotations

import logging

from ..schemas import ControllerState

logger = logging.getLogger(__name__)

# Terminal states: the session reports and stops.
TERMINAL_STATES: frozenset[ControllerState] = frozenset(
    {
        ControllerState.EXHAUSTED,
        ControllerState.CANCELLED,
    }
)


# Key   : current state
# Value : states reachable from it
#
# - Accepted is terminal unless the caller asked to keep iterating, in
#   which case the accepted candidate is re-entered as the new baseline.
# - Rejected always returns to the original baseline.
# - Proposing falls back to Baselined when no rewrite applies to a finding.
ALLOWED_TRANSITIONS: dict[ControllerState, frozenset[ControllerState]] = {
    ControllerState.BASELINED: frozenset(
        {
            ControllerState.PROPOSING,
            ControllerState.ACCEPTED,
            ControllerState.EXHAUSTED,
            ControllerState.CANCELLED,
        }
    ),
    ControllerState.PROPOSING: frozenset(
        {
            ControllerState.VERIFYING,
            ControllerState.BASELINED,
            ControllerState.CANCELLED,
        }
    ),
    ControllerState.VERIFYING: frozenset(
        {
            ControllerState.ACCEPTED,
            ControllerState.REJECTED,
            ControllerState.CANCELLED,
        }
    ),
    ControllerState.REJECTED: frozenset(
        {
            ControllerState.BASELINED,
        }
    ),
    ControllerState.ACCEPTED: frozenset(
        {
            ControllerState.BASELINED,
        }
    ),
}


def is_terminal_state(state: ControllerState) -> bool:
    """Return True if the given state ends the session."""
    return state in TERMINAL_STATES


def is_valid_transition(prev_state: ControllerState, next_state: ControllerState) -> bool:
    """Return True if the transition prev_state -> next_state is allowed."""
    return next_state in ALLOWED_TRANSITIONS.get(prev_state, frozenset())


class ControllerStateMachine:
    """Tracks the current state and the path taken through the machine."""

    def __init__(self, initial: ControllerState = ControllerState.BASELINED):
        self.state = initial
        self.history: list[ControllerState] = [initial]

    def transition(self, next_state: ControllerState) -> ControllerState:
        if not is_valid_transition(self.state, next_state):
            raise ValueError(f"Invalid controller transition {self.state.value} -> {next_state.value}")
        logger.info("Controller: %s -> %s", self.state.value, next_state.value)
        self.state = next_state
        self.history.append(next_state)
        return next_state

    @property
    def terminal(self) -> bool:
        return is_terminal_state(self.state)
