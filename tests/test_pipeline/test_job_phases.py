"""Tests for extraction job phase definitions and transition validation."""

from propex.pipeline.phases import TERMINAL_PHASES, VALID_TRANSITIONS, JobPhase


class TestPhaseDefinitions:
    """Test that all phases are properly defined."""

    def test_all_phases_exist(self):
        expected = {
            "INIT", "SCORE", "FETCH", "EXTRACT", "RECONCILE",
            "PERSIST", "COMPLETE", "FAIL", "CANCELLED",
        }
        assert {p.value for p in JobPhase} == expected

    def test_terminal_phases(self):
        assert TERMINAL_PHASES == {JobPhase.COMPLETE, JobPhase.FAIL, JobPhase.CANCELLED}

    def test_terminal_phases_have_no_transitions(self):
        for phase in TERMINAL_PHASES:
            assert VALID_TRANSITIONS[phase] == set()

    def test_every_phase_has_transition_entry(self):
        for phase in JobPhase:
            assert phase in VALID_TRANSITIONS

    def test_happy_path_is_linear(self):
        path = [
            JobPhase.INIT, JobPhase.SCORE, JobPhase.FETCH, JobPhase.EXTRACT,
            JobPhase.RECONCILE, JobPhase.PERSIST, JobPhase.COMPLETE,
        ]
        for current, nxt in zip(path, path[1:]):
            assert nxt in VALID_TRANSITIONS[current]

    def test_non_terminal_phases_can_fail_or_cancel(self):
        for phase in JobPhase:
            if phase not in TERMINAL_PHASES:
                assert JobPhase.FAIL in VALID_TRANSITIONS[phase], (
                    f"Phase {phase.value} cannot transition to FAIL"
                )
                assert JobPhase.CANCELLED in VALID_TRANSITIONS[phase]

    def test_no_transitions_to_init(self):
        for phase in JobPhase:
            assert JobPhase.INIT not in VALID_TRANSITIONS[phase]

    def test_no_phase_skipping(self):
        assert JobPhase.EXTRACT not in VALID_TRANSITIONS[JobPhase.SCORE]
        assert JobPhase.COMPLETE not in VALID_TRANSITIONS[JobPhase.EXTRACT]
