"""Tests for the per-mode violation rules."""

from coherent_engine.config import EngineConfig
from coherent_engine.models.state import (
    InstructionalState,
    LogicalCohesivenessState,
    LogicalConsistencyState,
    MotivationalState,
    PhilosophicalState,
    ScientificExplanatoryState,
)
from coherent_engine.validation.rules import detect_violations, thesis_drifted


class TestLogicalConsistency:
    def test_negating_a_prior_assertion_is_a_contradiction(self):
        state = LogicalConsistencyState(assertions=["X is true"])
        violations = detect_violations(state, {"negations": ["X is true"]})

        assert len(violations) == 1
        assert violations[0].type == "contradiction"
        assert violations[0].location == "negations"

    def test_asserting_a_prior_negation_is_a_contradiction(self):
        state = LogicalConsistencyState(negations=["Y holds"])
        violations = detect_violations(state, {"assertions": ["Y holds"]})
        assert [v.type for v in violations] == ["contradiction"]

    def test_no_overlap_no_violation(self):
        state = LogicalConsistencyState(assertions=["X is true"], negations=["Y holds"])
        assert detect_violations(state, {"assertions": ["Z is new"], "negations": ["W"]}) == []

    def test_disjoint_pair(self):
        state = LogicalConsistencyState(
            assertions=["the light is on"],
            disjoint_pairs=[("the light is on", "the light is off")],
        )
        violations = detect_violations(state, {"assertions": ["the light is off"]})
        assert [v.location for v in violations] == ["disjoint_pairs"]

    def test_ill_typed_update_is_ignored(self):
        state = LogicalConsistencyState(assertions=["X"])
        assert detect_violations(state, {"negations": "X"}) == []


class TestThesisDrift:
    config = EngineConfig()

    def test_empty_or_equal_is_not_drift(self):
        assert not thesis_drifted("", "Anything at all", self.config)
        assert not thesis_drifted("Same thesis", "Same thesis", self.config)

    def test_prefix_containment_is_not_drift(self):
        old = "Markets allocate scarce resources efficiently"
        assert not thesis_drifted(old, "Indeed, markets allocate scarce resources well", self.config)

    def test_reordered_paraphrase_is_not_drift(self):
        old = "Scarce resources are allocated efficiently by markets"
        new = "Markets efficiently allocate scarce resources"
        assert not thesis_drifted(old, new, self.config)

    def test_unrelated_thesis_is_drift(self):
        old = "Markets allocate scarce resources efficiently"
        assert thesis_drifted(old, "Poetry reveals the limits of language", self.config)


class TestCohesiveness:
    def test_thesis_drift_is_flagged(self):
        state = LogicalCohesivenessState(thesis="Free will is compatible with determinism")
        violations = detect_violations(state, {"thesis": "Cats are better pets than dogs"})
        assert [v.type for v in violations] == ["drift"]

    def test_repeated_assertion_is_flagged(self):
        state = LogicalCohesivenessState(assertions_made=["Causes precede effects."])
        violations = detect_violations(state, {"assertions_made": ["causes precede effects"]})
        assert [v.type for v in violations] == ["repetition"]


def test_scientific_edge_reversal():
    state = ScientificExplanatoryState(
        causal_edges=[{"source": "rates", "target": "inflation", "direction": "-"}],
    )
    violations = detect_violations(state, {
        "causal_edges": [{"from": "rates", "to": "inflation", "direction": "+"}],
    })
    assert [v.type for v in violations] == ["contradiction"]


def test_instructional_repeated_step():
    state = InstructionalState(steps_done=["Install the package"])
    violations = detect_violations(state, {"steps_done": ["Install the package"]})
    assert [v.type for v in violations] == ["repetition"]


class TestPhilosophical:
    def test_answering_unraised_objection(self):
        state = PhilosophicalState(objections_raised=["The regress objection"])
        violations = detect_violations(state, {"objections_answered": ["The circularity objection"]})
        assert [v.type for v in violations] == ["unresolved"]

    def test_objection_raised_in_same_update_is_fine(self):
        state = PhilosophicalState()
        update = {
            "objections_raised": ["The regress objection"],
            "objections_answered": ["The regress objection"],
        }
        assert detect_violations(state, update) == []

    def test_dialectic_thesis_drift(self):
        state = PhilosophicalState(dialectic={"thesis": "Knowledge is justified true belief"})
        violations = detect_violations(state, {"dialectic": {"thesis": "Music expresses emotion"}})
        assert [v.location for v in violations] == ["dialectic.thesis"]


def test_modes_without_rules_return_nothing():
    state = MotivationalState(appeals_used=["fear"])
    assert detect_violations(state, {"appeals_used": ["fear"]}) == []
