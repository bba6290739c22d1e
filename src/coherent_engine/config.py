"""Engine configuration: single entry point for all tunables."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CoherenceMode(str, Enum):
    """The closed set of coherence-tracking schemas."""

    LOGICAL_CONSISTENCY = "logical-consistency"
    LOGICAL_COHESIVENESS = "logical-cohesiveness"
    SCIENTIFIC_EXPLANATORY = "scientific-explanatory"
    THEMATIC_PSYCHOLOGICAL = "thematic-psychological"
    INSTRUCTIONAL = "instructional"
    MOTIVATIONAL = "motivational"
    MATHEMATICAL = "mathematical"
    PHILOSOPHICAL = "philosophical"


class TaskKind(str, Enum):
    """What the oracle is asked to do with each chunk."""

    REWRITE = "rewrite"
    EVALUATE = "evaluate"


class EntityKind(str, Enum):
    """Kinds of units pulled out of a document by extraction tasks."""

    QUOTE = "quote"
    CLAIM = "claim"  # an author position
    ARGUMENT = "argument"


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        chunk_words: Words per chunk for sequential processing.
        extraction_chunk_words: Words per chunk for entity extraction.
        coherent_threshold_words: Below this word count chunked
            processing is usually unnecessary.
        oracle_timeout_s: Upper bound on a single oracle call.
        oracle_max_attempts: Attempt ceiling for timeout/transient failures.
        backoff_base_s: First retry delay; doubled per attempt.
        backoff_cap_s: Maximum retry delay.
        model: Chat model used by the OpenAI oracle.
        temperature: Sampling temperature for the OpenAI oracle.
        max_output_tokens: Completion budget for the OpenAI oracle.
        max_prompt_tokens: Prompts above this size fail before sending.
        default_mode: Mode used when detection yields nothing usable.
        inter_chunk_delay_s: Pause between chunk calls (rate limiting).
        skeleton_context: Plan a document skeleton before processing and
            embed it in every chunk prompt.
        detection_excerpt_chars: Opening excerpt size for mode detection.
        large_document_threshold: Word count at which skeleton planning
            switches to the two-tier strategy.
        macro_segment_words: Segment size for two-tier planning.
        skeleton_preview_words: Preview section size for single-pass
            planning.
        skeleton_preview_sections: Maximum preview sections shown.
        skeleton_preview_chars: Characters shown per preview section.
        skeleton_concurrency: Concurrent partial-skeleton calls.
        fallback_key_arguments: Key arguments kept by the synthesis
            fallback.
        fallback_central_concepts: Central concepts kept by the synthesis
            fallback.
        drift_prefix_chars: Leading characters of the old thesis that the
            new thesis must contain to avoid a drift flag.
        drift_overlap_threshold: Share of the old thesis' significant
            words the new thesis must repeat to avoid a drift flag.
        ranking_min_entities: Pools at or below this size skip the
            oracle ranking pass.
        ranking_pool_size: Candidates sent to the ranking pass.
        ranking_top_n: Entities kept by the ranking pass.
        ranking_top_n_minor: Entities kept when minor ones are requested.
    """

    # Chunking
    chunk_words: int = 1000
    extraction_chunk_words: int = 1500
    coherent_threshold_words: int = 2000

    # Oracle
    oracle_timeout_s: float = 120.0
    oracle_max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 10.0
    model: str = "gpt-4o"
    temperature: float = 0.2
    max_output_tokens: int = 4096
    max_prompt_tokens: int = 100_000

    # Sequential processing
    default_mode: CoherenceMode = CoherenceMode.LOGICAL_COHESIVENESS
    inter_chunk_delay_s: float = 0.2
    skeleton_context: bool = True
    detection_excerpt_chars: int = 2000

    # Skeleton planning
    large_document_threshold: int = 50_000
    macro_segment_words: int = 50_000
    skeleton_preview_words: int = 3000
    skeleton_preview_sections: int = 10
    skeleton_preview_chars: int = 1200
    skeleton_concurrency: int = 4
    fallback_key_arguments: int = 20
    fallback_central_concepts: int = 15

    # Violation detection
    drift_prefix_chars: int = 20
    drift_overlap_threshold: float = 0.5

    # Entity ranking
    ranking_min_entities: int = 10
    ranking_pool_size: int = 50
    ranking_top_n: int = 15
    ranking_top_n_minor: int = 30
