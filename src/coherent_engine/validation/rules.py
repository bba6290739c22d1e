"""Violation rules: mode-specific checks of a proposed update.

The symbolic layer compares an oracle's partial ``state_update``
against the state accumulated *before* the chunk, without any oracle
call.  Each rule returns a list of :class:`Violation`; the runner picks
the rule set for the state's mode.

Detection is advisory: violations are attached to the chunk record and
never block a run or rewrite the state.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from coherent_engine.config import CoherenceMode, EngineConfig
from coherent_engine.models.base import Violation
from coherent_engine.models.state import (
    CoherenceState,
    InstructionalState,
    LogicalCohesivenessState,
    LogicalConsistencyState,
    MathematicalState,
    PhilosophicalState,
    ScientificExplanatoryState,
    sanitize_update,
)
from coherent_engine.utils.sanitize import normalise_text, significant_words

logger = logging.getLogger(__name__)

Rule = Callable[[Any, dict[str, Any], EngineConfig], list[Violation]]


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# ── Shared checks ───────────────────────────────────────────────────

def thesis_drifted(old: str, new: str, config: EngineConfig) -> bool:
    """Heuristic: has the thesis moved away from *old*?

    Not a drift when either thesis is empty, when they are equal, when
    *new* contains the first ``drift_prefix_chars`` characters of *old*
    (case-insensitive), or when *new* repeats at least
    ``drift_overlap_threshold`` of *old*'s significant words.

    The prefix test alone misses paraphrases that keep the wording but
    reorder it; the word-overlap test catches those.  Both still miss a
    faithful paraphrase with new vocabulary (false positive) and accept
    a reversal that reuses the same words, e.g. an inserted "not"
    (false negative).
    """
    if not old.strip() or not new.strip() or old.strip() == new.strip():
        return False

    prefix = old.lower()[: config.drift_prefix_chars].strip()
    if prefix and prefix in new.lower():
        return False

    old_words = significant_words(old)
    if not old_words:
        return False
    overlap = len(old_words & significant_words(new)) / len(old_words)
    return overlap < config.drift_overlap_threshold


def check_repetition(
    existing: list[str],
    added: list[str],
    attribute: str,
) -> list[Violation]:
    """Flag update items that restate an item already recorded."""
    seen = {normalise_text(item) for item in existing}
    violations = []
    for item in added:
        if normalise_text(item) in seen:
            violations.append(Violation(
                type="repetition",
                description=f"'{_preview(item)}' repeats an earlier entry.",
                location=attribute,
            ))
    return violations


# ── Per-mode rules ──────────────────────────────────────────────────

def check_logical_consistency(
    state: LogicalConsistencyState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    """New assertions must not match prior negations, and vice versa.

    Also flags an assertion whose disjoint partner (from the state or
    the update) is already asserted.
    """
    violations: list[Violation] = []
    new_assertions: list[str] = update.get("assertions", [])
    new_negations: list[str] = update.get("negations", [])

    for assertion in new_assertions:
        if assertion in state.negations:
            violations.append(Violation(
                type="contradiction",
                description=f'New assertion "{assertion}" contradicts prior negation.',
                location="assertions",
            ))
    for negation in new_negations:
        if negation in state.assertions:
            violations.append(Violation(
                type="contradiction",
                description=f'New negation "{negation}" contradicts prior assertion.',
                location="negations",
            ))

    pairs = [*state.disjoint_pairs, *(tuple(p) for p in update.get("disjoint_pairs", []))]
    asserted = set(state.assertions)
    for assertion in new_assertions:
        for left, right in pairs:
            partner = right if assertion == left else left if assertion == right else None
            if partner is not None and partner in asserted:
                violations.append(Violation(
                    type="contradiction",
                    description=(
                        f'New assertion "{assertion}" excludes prior assertion "{partner}".'
                    ),
                    location="disjoint_pairs",
                ))
    return violations


def check_logical_cohesiveness(
    state: LogicalCohesivenessState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    violations: list[Violation] = []
    new_thesis = update.get("thesis")
    if new_thesis and thesis_drifted(state.thesis, new_thesis, config):
        violations.append(Violation(
            type="drift",
            description=(
                f'Thesis appears to have drifted from "{_preview(state.thesis)}" '
                f'to "{_preview(new_thesis)}".'
            ),
            location="thesis",
        ))
    violations.extend(check_repetition(
        state.assertions_made, update.get("assertions_made", []), "assertions_made",
    ))
    return violations


def check_scientific_explanatory(
    state: ScientificExplanatoryState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    """A causal edge must not reverse the sign of an established edge."""
    known = {(e.source, e.target): e.direction for e in state.causal_edges}
    violations = []
    for edge in update.get("causal_edges", []):
        prior = known.get((edge["source"], edge["target"]))
        if prior is not None and prior != edge["direction"]:
            violations.append(Violation(
                type="contradiction",
                description=(
                    f"Edge {edge['source']} -> {edge['target']} changes direction "
                    f"from '{prior}' to '{edge['direction']}'."
                ),
                location="causal_edges",
            ))
    return violations


def check_instructional(
    state: InstructionalState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    return check_repetition(state.steps_done, update.get("steps_done", []), "steps_done")


def check_mathematical(
    state: MathematicalState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    return check_repetition(state.proved, update.get("proved", []), "proved")


def check_philosophical(
    state: PhilosophicalState,
    update: dict[str, Any],
    config: EngineConfig,
) -> list[Violation]:
    """Dialectical thesis drift, and answers to objections never raised."""
    violations: list[Violation] = []

    new_thesis = (update.get("dialectic") or {}).get("thesis")
    if new_thesis and thesis_drifted(state.dialectic.thesis, new_thesis, config):
        violations.append(Violation(
            type="drift",
            description=(
                f'Dialectical thesis shifted from "{_preview(state.dialectic.thesis)}" '
                f'to "{_preview(new_thesis)}".'
            ),
            location="dialectic.thesis",
        ))

    raised = {
        normalise_text(o)
        for o in [*state.objections_raised, *update.get("objections_raised", [])]
    }
    for answered in update.get("objections_answered", []):
        if normalise_text(answered) not in raised:
            violations.append(Violation(
                type="unresolved",
                description=f"Answers an objection that was never raised: '{_preview(answered)}'.",
                location="objections_answered",
            ))
    return violations


def _no_rules(state: Any, update: dict[str, Any], config: EngineConfig) -> list[Violation]:
    return []


_RULES: dict[CoherenceMode, Rule] = {
    CoherenceMode.LOGICAL_CONSISTENCY: check_logical_consistency,
    CoherenceMode.LOGICAL_COHESIVENESS: check_logical_cohesiveness,
    CoherenceMode.SCIENTIFIC_EXPLANATORY: check_scientific_explanatory,
    CoherenceMode.THEMATIC_PSYCHOLOGICAL: _no_rules,
    CoherenceMode.INSTRUCTIONAL: check_instructional,
    CoherenceMode.MOTIVATIONAL: _no_rules,
    CoherenceMode.MATHEMATICAL: check_mathematical,
    CoherenceMode.PHILOSOPHICAL: check_philosophical,
}

if set(_RULES) != set(CoherenceMode):
    raise RuntimeError("Every CoherenceMode needs a violation rule set.")


# ── Master runner ───────────────────────────────────────────────────

def detect_violations(
    state: CoherenceState,
    update: Mapping[str, Any] | None,
    config: EngineConfig | None = None,
) -> list[Violation]:
    """Run the rule set for *state*'s mode against a proposed *update*.

    Args:
        state: The state accumulated before the chunk.
        update: The raw partial update; sanitised with the same rules
            the merge step uses, so only attributes that will actually
            be merged are checked.
        config: Thresholds for the heuristic rules.

    Returns:
        Flat list of violations (possibly empty).
    """
    config = config or EngineConfig()
    clean = sanitize_update(state.mode, update)
    if not clean:
        return []

    violations = _RULES[state.coherence_mode](state, clean, config)
    if violations:
        logger.info(
            "Violation check (%s): %d flagged [%s].",
            state.mode,
            len(violations),
            ", ".join(sorted({v.type for v in violations})),
        )
    return violations
