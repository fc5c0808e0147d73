"""Per-source fetch state machine: states and legal transitions."""

from __future__ import annotations

from enum import Enum


class FetchState(str, Enum):
    """Where one source is in the tier escalation."""

    UNTRIED = "UNTRIED"
    TIER1_FAILED = "TIER1_FAILED"
    TIER2_FAILED = "TIER2_FAILED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


VALID_TRANSITIONS: dict[FetchState, set[FetchState]] = {
    FetchState.UNTRIED: {FetchState.SUCCEEDED, FetchState.TIER1_FAILED, FetchState.FAILED},
    FetchState.TIER1_FAILED: {FetchState.SUCCEEDED, FetchState.TIER2_FAILED, FetchState.FAILED},
    FetchState.TIER2_FAILED: {FetchState.SUCCEEDED, FetchState.FAILED},
    FetchState.SUCCEEDED: set(),  # terminal
    FetchState.FAILED: set(),  # terminal
}

TERMINAL_STATES = {FetchState.SUCCEEDED, FetchState.FAILED}

# Tier to run next from each non-terminal state
NEXT_TIER: dict[FetchState, int] = {
    FetchState.UNTRIED: 1,
    FetchState.TIER1_FAILED: 2,
    FetchState.TIER2_FAILED: 3,
}

FAILED_AFTER_TIER: dict[int, FetchState] = {
    1: FetchState.TIER1_FAILED,
    2: FetchState.TIER2_FAILED,
    3: FetchState.FAILED,
}


class FetchStateError(Exception):
    """Raised on an illegal fetch state transition."""


def transition(current: FetchState, to_state: FetchState) -> FetchState:
    if to_state not in VALID_TRANSITIONS[current]:
        raise FetchStateError(f"Invalid transition: {current.value} -> {to_state.value}")
    return to_state
