"""Extraction job phases: the finite state machine states and transitions."""

from __future__ import annotations

from enum import Enum


class JobPhase(str, Enum):
    """All valid phases of one product's extraction job."""

    INIT = "INIT"
    SCORE = "SCORE"
    FETCH = "FETCH"
    EXTRACT = "EXTRACT"
    RECONCILE = "RECONCILE"
    PERSIST = "PERSIST"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    CANCELLED = "CANCELLED"


_ABORT = {JobPhase.FAIL, JobPhase.CANCELLED}

# Valid phase transitions. Each key maps to a set of phases it can transition to.
VALID_TRANSITIONS: dict[JobPhase, set[JobPhase]] = {
    JobPhase.INIT: {JobPhase.SCORE} | _ABORT,
    JobPhase.SCORE: {JobPhase.FETCH} | _ABORT,
    JobPhase.FETCH: {JobPhase.EXTRACT} | _ABORT,
    JobPhase.EXTRACT: {JobPhase.RECONCILE} | _ABORT,
    JobPhase.RECONCILE: {JobPhase.PERSIST} | _ABORT,
    JobPhase.PERSIST: {JobPhase.COMPLETE} | _ABORT,
    JobPhase.COMPLETE: set(),  # terminal
    JobPhase.FAIL: set(),  # terminal
    JobPhase.CANCELLED: set(),  # terminal
}

TERMINAL_PHASES = {JobPhase.COMPLETE, JobPhase.FAIL, JobPhase.CANCELLED}
