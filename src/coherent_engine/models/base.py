"""Run-level data models: runs, chunk records, violations, entities, progress.

These models serve a dual purpose:
1. **Oracle reply schema**: ``Violation`` and ``Repair`` are validated
   straight out of the JSON an evaluating oracle returns.
2. **Persistence representation**: ``DocumentRun`` and ``ChunkRecord``
   are what a :class:`~coherent_engine.storage.store.RunStore` reads and
   writes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coherent_engine.config import CoherenceMode, EntityKind
from coherent_engine.models.state import CoherenceState


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RunPhase(str, Enum):
    """Phases reported through the progress callback."""

    DETECTING = "detecting"
    EXTRACTING_INITIAL_STATE = "extracting-initial-state"
    SKELETON = "skeleton"
    PROCESSING = "processing"
    EXTRACTION = "extraction"
    RANKING = "ranking"
    COMPLETED = "completed"
    FAILED = "failed"


# =====================================================================
# Violations
# =====================================================================

ViolationType = Literal["contradiction", "drift", "unresolved", "repetition"]


class Violation(BaseModel):
    """A flagged, likely inconsistency.  Advisory only, never repaired."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: ViolationType
    description: str
    location: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class Repair(BaseModel):
    """A repair suggested by an evaluating oracle (reported, not applied)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    location: str = ""
    suggestion: str


# =====================================================================
# Run and chunk records
# =====================================================================

class DocumentRun(BaseModel):
    """One execution of the engine over one input text."""

    run_id: str
    mode: CoherenceMode
    total_chunks: int
    processed_chunks: int = 0
    word_count: int = 0
    status: RunStatus = RunStatus.IN_PROGRESS
    failure_reason: str | None = None
    state: CoherenceState


class ChunkRecord(BaseModel):
    """One processed chunk.  Appended once, never modified."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    index: int
    input_text: str
    output_text: str
    status: Literal["preserved", "weakened", "broken"] = "preserved"
    violations: list[Violation] = Field(default_factory=list)
    repairs: list[Repair] = Field(default_factory=list)
    state_after: CoherenceState
    parse_failed: bool = False


# =====================================================================
# Extracted entities
# =====================================================================

class ExtractedEntity(BaseModel):
    """A quote, claim or argument pulled from one chunk."""

    kind: EntityKind
    text: str = Field(..., description="Payload text used for deduplication.")
    source: str = ""
    chunk_index: int = 0
    importance: float | None = Field(default=None, ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)


# =====================================================================
# Progress
# =====================================================================

class ProgressEvent(BaseModel):
    """Payload passed to the caller's progress callback."""

    model_config = ConfigDict(frozen=True)

    phase: RunPhase
    message: str
    run_id: str | None = None
    current_chunk: int | None = None  # 1-based
    total_chunks: int | None = None
    content: str | None = None  # produced text, for streaming rewrites
