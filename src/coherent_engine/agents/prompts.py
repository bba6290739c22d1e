"""Prompt templates for detection, state extraction, chunk processing,
skeleton planning, entity extraction and ranking.

Templates use Python string formatting (``{variable}``) for injection.
Every template opens with a ``TASK:`` line naming the call, which keeps
transcripts readable and lets test oracles route prompts.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

from coherent_engine.config import CoherenceMode
from coherent_engine.models.state import (
    CoherenceState,
    LogicalCohesivenessState,
    LogicalConsistencyState,
    PhilosophicalState,
    ScientificExplanatoryState,
    create_initial_state,
)

NONE = "(none)"


# =====================================================================
# Mode detection & initial state
# =====================================================================

MODE_DETECTION = """\
TASK: DETECT MODE
Analyze this text and determine its primary coherence mode.

TEXT:
{excerpt}

MODES:
1. logical-consistency - Tracks factual assertions to prevent contradictions
2. logical-cohesiveness - Tracks argument structure (thesis, support, objections)
3. scientific-explanatory - Tracks causal relationships and mechanisms
4. thematic-psychological - Tracks emotional tone, affect, narrative stance
5. instructional - Tracks goals, steps, prerequisites
6. motivational - Tracks direction, intensity, target of persuasion
7. mathematical - Tracks givens, lemmas, proof methods
8. philosophical - Tracks concepts, distinctions, dialectical moves

Return ONLY the mode name (e.g., "logical-cohesiveness"), nothing else.
"""

INITIAL_STATE = """\
TASK: INITIAL STATE
Extract the initial coherence state from this opening text.

MODE: {mode}
TEXT:
{chunk}

Based on the mode "{mode}", extract the initial state elements. Return JSON
matching this structure:
{schema}

Fill in what you can determine from the text. For thesis/goal, extract the
main claim or purpose. For key terms or concepts, extract any definitions.
Return valid JSON only.
"""


# =====================================================================
# Chunk processing
# =====================================================================

REWRITE_CHUNK = """\
TASK: REWRITE CHUNK
You are rewriting a document chunk-by-chunk while maintaining coherence.

COHERENCE MODE: {mode}

CURRENT ACCUMULATED STATE:
{state}
{skeleton_section}{numbering_section}{length_section}
CHUNK {number} OF {total}:
{chunk}

{instructions_section}
TASK:
1. Rewrite this chunk according to the instructions
2. Maintain coherence with the accumulated state
3. Do not contradict prior assertions
4. Continue the established thesis and argument structure

Return JSON:
{{
  "rewritten_text": "Your rewritten chunk here",
  "state_update": {update_hint}
}}
"""

EVALUATE_CHUNK = """\
TASK: EVALUATE CHUNK
Evaluate this chunk against the accumulated coherence state.

COHERENCE MODE: {mode}

CURRENT ACCUMULATED STATE:
{state}
{skeleton_section}
CHUNK {number} OF {total}:
{chunk}

{instructions_section}
Return JSON:
{{
  "status": "preserved" | "weakened" | "broken",
  "violations": [{{"type": "contradiction|drift|unresolved|repetition", "description": "..."}}],
  "repairs": [{{"location": "...", "suggestion": "..."}}],
  "state_update": {update_hint}
}}
"""

NUMBERING_SECTION = """
CRITICAL NUMBERING RULES (MUST FOLLOW):
- This is chunk {number} of the document
- {previous}
- Start this chunk with {next_chapter}. and continue ({next_chapter}.1, {next_chapter}.11, etc.)
- If multiple themes exist in this chunk, use {next_chapter}., {next_chapter_after}., etc.
- NEVER use any number lower than {next_chapter} for chapter headings
- Include "last_chapter_number" in state_update with the highest chapter number used
"""

LENGTH_SECTION = """
TARGET LENGTH: about {words} words for this chunk.
"""


# =====================================================================
# Skeleton planning
# =====================================================================

SKELETON = """\
TASK: DOCUMENT SKELETON
Analyze this document and extract its structural skeleton.

DOCUMENT ({count} sections, showing first {shown}):
{previews}

Extract and return JSON:
{{
  "main_thesis": "The central claim or purpose of the document",
  "overarching_theme": "The unifying theme across all sections",
  "sections": [
    {{
      "index": 0,
      "title": "Section title or description",
      "role": "introduction|argument|evidence|objection|reply|conclusion|transition",
      "key_points": ["Main point 1", "Main point 2"],
      "relation_to_thesis": "How this section supports/develops the thesis"
    }}
  ],
  "key_arguments": ["Argument 1", "Argument 2"],
  "central_concepts": ["Concept 1", "Concept 2"],
  "narrative_arc": "Description of how the document develops"
}}
"""

SKELETON_SYNTHESIS = """\
TASK: SKELETON SYNTHESIS
You have skeletons from {count} segments of a very large document.
Synthesize these into one unified skeleton.

SEGMENT SKELETONS:
{partials}

Return unified skeleton JSON with:
- main_thesis: The overarching thesis across ALL segments
- overarching_theme: The unifying theme
- sections: High-level section breakdown (combine similar sections), each
  with index, title, role, key_points, relation_to_thesis
- key_arguments: Most important arguments from the entire document
- central_concepts: Core concepts
- narrative_arc: How the full document develops
"""


# =====================================================================
# Entity extraction & ranking
# =====================================================================

_EXTRACTION_CONTEXT = """\
DOCUMENT CONTEXT:
- Main Thesis: {thesis}
- Overarching Theme: {theme}
- Key Arguments: {key_arguments}
- This Section's Role: {role}
- This Section's Relation to Thesis: {relation}
"""

EXTRACT_QUOTES = """\
TASK: EXTRACT QUOTES
Extract the most significant verbatim quotes from this text.

""" + _EXTRACTION_CONTEXT + """
CHUNK {number} OF {total}:
{chunk}

Extract up to {count} quotes that are:
1. REPRESENTATIVE of the document's overall argument
2. Memorable and quotable
3. Central to understanding the thesis: "{thesis}"

Return JSON array:
[
  {{
    "quote": "Exact verbatim quote from the text",
    "context": "Brief description of what the quote is about",
    "significance": "Why this quote matters to the overall argument"
  }}
]
"""

EXTRACT_POSITIONS = """\
TASK: EXTRACT POSITIONS
Extract author positions from this text chunk.

""" + _EXTRACTION_CONTEXT + """
CHUNK {number} OF {total}:
{chunk}

Extract up to {count} positions that are REPRESENTATIVE of the document's
overall argument, not just locally prominent. Prioritize positions that
connect to the main thesis: "{thesis}"

Return JSON array:
[
  {{
    "position": "The author's stated position (verbatim or closely paraphrased)",
    "confidence": 0.0,
    "importance": "central|supporting|peripheral",
    "relation_to_thesis": "How this position relates to the main thesis"
  }}
]
"""

EXTRACT_ARGUMENTS = """\
TASK: EXTRACT ARGUMENTS
Extract formal arguments from this text.

""" + _EXTRACTION_CONTEXT + """
CHUNK {number} OF {total}:
{chunk}

Extract up to {count} formal arguments that bear on the thesis: "{thesis}"

For each argument, identify:
1. The conclusion (what is being argued)
2. The premises (reasons given)
3. Any counterarguments addressed
4. Strength of the argument

Return JSON array:
[
  {{
    "conclusion": "The main claim being argued",
    "premises": ["First premise", "Second premise"],
    "counterarguments": ["Counterargument addressed, if any"],
    "strength": "strong|moderate|weak"
  }}
]
"""

RANK_ENTITIES = """\
TASK: RANK ENTITIES
Given the document's main thesis: "{thesis}"

And these extracted items:
{items}

1. Remove duplicates (items saying essentially the same thing)
2. Rank remaining items by how central they are to the thesis
3. Return the top {top_n} items in ranked order

Return JSON array of item numbers (1-based) to keep, in ranked order:
[3, 7, 1, 15]
"""


# =====================================================================
# Helpers: state rendering
# =====================================================================

def _recent(items: list[Any], n: int) -> str:
    return "; ".join(str(i) for i in items[-n:]) or NONE


def _render_cohesiveness(s: LogicalCohesivenessState) -> str:
    return "\n".join([
        f"Thesis: {s.thesis or '(not yet established)'}",
        f"Current stage: {s.current_stage}",
        f"Key terms defined: {', '.join(s.key_terms) or NONE}",
        f"Assertions made: {_recent(s.assertions_made, 10)}",
        f"Support queue (claims needing backing): {_recent(s.support_queue, 10)}",
        f"Bridge required: {s.bridge_required or NONE}",
    ])


def _render_consistency(s: LogicalConsistencyState) -> str:
    pairs = "; ".join(f"({a} vs {b})" for a, b in s.disjoint_pairs) or NONE
    return "\n".join([
        f"Assertions established as true: {_recent(s.assertions, 15)}",
        f"Negations (claims denied): {_recent(s.negations, 10)}",
        f"Mutually exclusive pairs: {pairs}",
    ])


def _render_philosophical(s: PhilosophicalState) -> str:
    concepts = "; ".join(f"{k}: {v}" for k, v in s.core_concepts.items()) or NONE
    distinctions = "; ".join(f"{a} vs {b}" for a, b in s.distinctions) or NONE
    d = s.dialectic
    return "\n".join([
        f"Core concepts: {concepts}",
        f"Distinctions: {distinctions}",
        (
            f"Dialectic: Thesis: {d.thesis or '?'}, Antithesis: {d.antithesis or '?'}, "
            f"Synthesis: {d.synthesis or '?'}"
        ),
        f"Objections raised: {_recent(s.objections_raised, 10)}",
        f"Objections answered: {_recent(s.objections_answered, 10)}",
    ])


def _render_scientific(s: ScientificExplanatoryState) -> str:
    edges = "; ".join(
        f"{e.source} -({e.direction})-> {e.target}" for e in s.causal_edges[-15:]
    ) or NONE
    loops = "; ".join(
        f"{loop.name} [{loop.status}]" for loop in s.active_feedback_loops
    ) or NONE
    return "\n".join([
        f"Level: {s.level}",
        f"Causal nodes: {_recent(s.causal_nodes, 20)}",
        f"Causal edges: {edges}",
        f"Feedback loops: {loops}",
        f"Mechanisms still owed: {', '.join(s.mechanism_requirements) or NONE}",
    ])


def _render_json(state: CoherenceState) -> str:
    return json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False)


_RENDERERS: dict[CoherenceMode, Callable[[Any], str]] = {
    CoherenceMode.LOGICAL_CONSISTENCY: _render_consistency,
    CoherenceMode.LOGICAL_COHESIVENESS: _render_cohesiveness,
    CoherenceMode.SCIENTIFIC_EXPLANATORY: _render_scientific,
    CoherenceMode.PHILOSOPHICAL: _render_philosophical,
}


def render_state(state: CoherenceState) -> str:
    """Human-readable rendering of *state* for prompt injection."""
    renderer = _RENDERERS.get(state.coherence_mode, _render_json)
    return renderer(state)


def state_schema(mode: CoherenceMode) -> str:
    """The empty state for *mode* as pretty JSON (without the ``mode`` tag)."""
    data = create_initial_state(mode).model_dump(mode="json")
    data.pop("mode", None)
    return json.dumps(data, indent=2)


def update_hint(mode: CoherenceMode) -> str:
    """Compact description of what a ``state_update`` may contain."""
    data = create_initial_state(mode).model_dump(mode="json")
    data.pop("mode", None)
    return (
        "{ only the attributes that changed, using these keys: "
        + ", ".join(data)
        + "; lists hold NEW items only }"
    )


# =====================================================================
# Helpers: instructions
# =====================================================================

_TARGET_PATTERNS = [
    re.compile(r"(\d{1,3}(?:,\d{3})+|\d+)\s*words?\b", re.IGNORECASE),
    re.compile(r"approximately\s+(\d{1,3}(?:,\d{3})+|\d+)", re.IGNORECASE),
    re.compile(r"about\s+(\d{1,3}(?:,\d{3})+|\d+)\s*words?\b", re.IGNORECASE),
    re.compile(r"target[:\s]+(\d{1,3}(?:,\d{3})+|\d+)", re.IGNORECASE),
]
_TARGET_RANGE = (500, 100_000)

# Chapter headings such as "3." or "• 12." at the start of a line.
_CHAPTER_HEADING = re.compile(r"^\s*[•\-*]*\s*(\d+)\.", re.MULTILINE)
_NUMBERING_MARKERS = ("tractatus", "wittgenstein", "numbered sections")


def parse_target_word_count(instructions: str | None) -> int | None:
    """Total output length requested in free-form *instructions*.

    Recognises "3,000 words", "approximately 5000", "about 800 words"
    and "target: 2000".  Values outside 500..100000 are ignored.
    """
    if not instructions:
        return None
    low, high = _TARGET_RANGE
    for pattern in _TARGET_PATTERNS:
        match = pattern.search(instructions)
        if match:
            value = int(match.group(1).replace(",", ""))
            if low <= value <= high:
                return value
    return None


def wants_numbered_sections(instructions: str | None) -> bool:
    """Whether the rewrite asks for continuously numbered chapter headings."""
    text = (instructions or "").lower()
    return any(marker in text for marker in _NUMBERING_MARKERS)


def max_chapter_number(text: str) -> int:
    """Highest chapter heading number found in *text* (0 when none)."""
    numbers = [int(n) for n in _CHAPTER_HEADING.findall(text)]
    return max((n for n in numbers if n > 0), default=0)


def numbering_section(chunk_index: int, last_chapter: int) -> str:
    next_chapter = 1 if chunk_index == 0 else last_chapter + 1
    previous = (
        "THIS IS THE FIRST CHUNK - START NUMBERING AT 1."
        if chunk_index == 0
        else f"The previous chunk ended at chapter {last_chapter}"
    )
    return NUMBERING_SECTION.format(
        number=chunk_index + 1,
        previous=previous,
        next_chapter=next_chapter,
        next_chapter_after=next_chapter + 1,
    )


def instructions_section(task: str, instructions: str | None) -> str:
    if not instructions:
        return ""
    label = "REWRITE INSTRUCTIONS" if task == "rewrite" else "EVALUATION FOCUS"
    return f"{label}: {instructions}\n"
