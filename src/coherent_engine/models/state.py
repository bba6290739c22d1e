"""Coherence state: one schema per mode, sharing the ``mode`` discriminant.

Each model is both:
1. **The accumulated state** threaded through a run (``model_dump`` is
   what gets persisted with every chunk record).
2. **The schema shown to the oracle** when it is asked to fill the
   initial state or propose a partial update.

Collection attributes start empty; scalars start at the mode's default
(empty string, or the first stage of a state machine).  The ``mode``
tag is fixed per class, so a state can never change mode.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)

from coherent_engine.config import CoherenceMode

logger = logging.getLogger(__name__)


class _StateBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @property
    def coherence_mode(self) -> CoherenceMode:
        return CoherenceMode(self.mode)  # type: ignore[attr-defined]


# =====================================================================
# Argumentative modes
# =====================================================================

class LogicalConsistencyState(_StateBase):
    """Tracks factual assertions so that later chunks do not contradict them."""

    mode: Literal["logical-consistency"] = "logical-consistency"
    assertions: list[str] = Field(default_factory=list)
    negations: list[str] = Field(default_factory=list)
    disjoint_pairs: list[tuple[str, str]] = Field(
        default_factory=list,
        description="Pairs of claims that cannot both hold.",
    )


class LogicalCohesivenessState(_StateBase):
    """Tracks argument structure: thesis, pending support, dialectical stage."""

    mode: Literal["logical-cohesiveness"] = "logical-cohesiveness"
    thesis: str = ""
    support_queue: list[str] = Field(
        default_factory=list,
        description="Claims made but not yet backed.",
    )
    current_stage: Literal[
        "setup", "support", "objection", "reply", "synthesis", "conclusion"
    ] = "setup"
    bridge_required: str = ""
    assertions_made: list[str] = Field(default_factory=list)
    key_terms: dict[str, str] = Field(default_factory=dict)


# =====================================================================
# Explanatory / affective modes
# =====================================================================

class CausalEdge(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source: str = Field(validation_alias=AliasChoices("source", "from"))
    target: str = Field(validation_alias=AliasChoices("target", "to"))
    direction: Literal["+", "-"] = "+"
    mechanism: str = ""


class FeedbackLoop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    participants: list[str] = Field(default_factory=list)
    status: Literal["active", "resolved"] = "active"


class ScientificExplanatoryState(_StateBase):
    """Tracks causal nodes, edges and open feedback loops."""

    mode: Literal["scientific-explanatory"] = "scientific-explanatory"
    causal_nodes: list[str] = Field(default_factory=list)
    causal_edges: list[CausalEdge] = Field(default_factory=list)
    level: Literal["physical", "socio-economic", "institutional", "mixed"] = "mixed"
    active_feedback_loops: list[FeedbackLoop] = Field(default_factory=list)
    mechanism_requirements: dict[str, str] = Field(default_factory=dict)


class ThematicPsychologicalState(_StateBase):
    """Tracks affect, tempo and narrative stance."""

    mode: Literal["thematic-psychological"] = "thematic-psychological"
    dominant_affect: str = ""
    tempo: Literal["slow", "moderate", "rapid"] = "moderate"
    stance: str = ""
    emotional_arc: list[str] = Field(default_factory=list)
    recurring_motifs: list[str] = Field(default_factory=list)


# =====================================================================
# Procedural modes
# =====================================================================

class InstructionalState(_StateBase):
    mode: Literal["instructional"] = "instructional"
    goal: str = ""
    steps_done: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    open_loops: list[str] = Field(default_factory=list)
    current_topic: str = ""


class MotivationalState(_StateBase):
    mode: Literal["motivational"] = "motivational"
    direction: str = ""
    intensity: Literal["low", "moderate", "high"] = "moderate"
    target: str = ""
    appeals_used: list[str] = Field(default_factory=list)


class MathematicalState(_StateBase):
    mode: Literal["mathematical"] = "mathematical"
    givens: list[str] = Field(default_factory=list)
    proved: list[str] = Field(default_factory=list)
    goal: str = ""
    proof_method: str = ""
    open_cases: list[str] = Field(default_factory=list)


# =====================================================================
# Philosophical mode
# =====================================================================

class Dialectic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thesis: str = ""
    antithesis: str = ""
    synthesis: str = ""


class PhilosophicalState(_StateBase):
    """Tracks concepts, distinctions and the dialectical movement.

    ``last_chapter_number`` carries section numbering across chunks when
    a rewrite is asked to keep numbered headings continuous.
    """

    mode: Literal["philosophical"] = "philosophical"
    core_concepts: dict[str, str] = Field(default_factory=dict)
    distinctions: list[tuple[str, str]] = Field(default_factory=list)
    dialectic: Dialectic = Field(default_factory=Dialectic)
    objections_raised: list[str] = Field(default_factory=list)
    objections_answered: list[str] = Field(default_factory=list)
    last_chapter_number: int = Field(
        default=0,
        validation_alias=AliasChoices("last_chapter_number", "lastChapterNumber"),
    )


CoherenceState = Annotated[
    Union[
        LogicalConsistencyState,
        LogicalCohesivenessState,
        ScientificExplanatoryState,
        ThematicPsychologicalState,
        InstructionalState,
        MotivationalState,
        MathematicalState,
        PhilosophicalState,
    ],
    Field(discriminator="mode"),
]

STATE_TYPES: dict[CoherenceMode, type[_StateBase]] = {
    CoherenceMode.LOGICAL_CONSISTENCY: LogicalConsistencyState,
    CoherenceMode.LOGICAL_COHESIVENESS: LogicalCohesivenessState,
    CoherenceMode.SCIENTIFIC_EXPLANATORY: ScientificExplanatoryState,
    CoherenceMode.THEMATIC_PSYCHOLOGICAL: ThematicPsychologicalState,
    CoherenceMode.INSTRUCTIONAL: InstructionalState,
    CoherenceMode.MOTIVATIONAL: MotivationalState,
    CoherenceMode.MATHEMATICAL: MathematicalState,
    CoherenceMode.PHILOSOPHICAL: PhilosophicalState,
}

if set(STATE_TYPES) != set(CoherenceMode):
    raise RuntimeError("Every CoherenceMode needs a state schema.")

_STATE_ADAPTER: TypeAdapter[Any] = TypeAdapter(CoherenceState)

# Keys the oracle sometimes sends in camelCase.
_FIELD_ALIASES = {"lastChapterNumber": "last_chapter_number"}


# ── Construction & (de)serialisation ────────────────────────────────

def create_initial_state(mode: CoherenceMode | str) -> CoherenceState:
    """Return the canonical empty state for *mode*."""
    return STATE_TYPES[CoherenceMode(mode)]()


def state_from_dict(data: Mapping[str, Any]) -> CoherenceState:
    """Rebuild a state from its ``model_dump()`` (e.g. read back from storage)."""
    return _STATE_ADAPTER.validate_python(dict(data))


def state_to_dict(state: CoherenceState) -> dict[str, Any]:
    return state.model_dump(mode="json")


# ── Partial updates ─────────────────────────────────────────────────

@lru_cache(maxsize=None)
def _field_adapter(model: type[BaseModel], name: str) -> TypeAdapter[Any]:
    return TypeAdapter(model.model_fields[name].annotation)


def sanitize_update(
    mode: CoherenceMode | str,
    update: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Keep only the attributes of *update* that fit *mode*'s schema.

    Oracle updates are partial and frequently sloppy.  Absent, ``null``,
    unknown or ill-typed attributes are dropped one by one rather than
    rejecting the whole update; the ``mode`` key is always dropped.
    Nested models (e.g. ``dialectic``) keep only the keys actually sent,
    so a partial ``{"thesis": ...}`` does not blank the other entries.

    Returns:
        Plain Python values (lists, dicts, scalars) keyed by field name.
    """
    if not update:
        return {}

    model = STATE_TYPES[CoherenceMode(mode)]
    clean: dict[str, Any] = {}
    for key, value in update.items():
        name = _FIELD_ALIASES.get(key, key)
        if name == "mode" or name not in model.model_fields or value is None:
            logger.debug("Dropping state update key %r for mode %s.", key, mode)
            continue
        try:
            validated = _field_adapter(model, name).validate_python(value)
        except ValidationError as e:
            logger.debug("Dropping ill-typed state update %r: %s", key, e.errors()[:1])
            continue

        if isinstance(validated, BaseModel):
            clean[name] = validated.model_dump(exclude_unset=True)
        elif isinstance(validated, list):
            clean[name] = [
                v.model_dump() if isinstance(v, BaseModel) else v
                for v in validated
            ]
        else:
            clean[name] = validated
    return clean
