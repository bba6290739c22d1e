"""Entity extraction: quotes, positions and arguments from long documents.

Flow::

    skeleton (planned once, reused by planning id)
      -> per-chunk extraction with skeleton context
      -> deduplication (deterministic)
      -> ranking (oracle, optional)

A chunk whose reply cannot be parsed contributes nothing; the pass goes
on with the next chunk.  Only fatal or exhausted oracle failures abort
the extraction.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from coherent_engine.agents import prompts
from coherent_engine.config import EntityKind
from coherent_engine.errors import EmptyDocumentError, ParseError
from coherent_engine.executors.dedup import deduplicate_entities, refine_ranking
from coherent_engine.models.base import ExtractedEntity, RunPhase
from coherent_engine.models.skeleton import DocumentSkeleton
from coherent_engine.utils.chunking import Chunk, chunk_document, word_count
from coherent_engine.utils.json_parse import parse_json_array
from coherent_engine.workflow.pipeline import CoherenceEngine, ProgressCallback, ProgressReporter

logger = logging.getLogger(__name__)

_STRENGTH_IMPORTANCE = {"strong": 1.0, "moderate": 0.5, "weak": 0.3}
_POSITION_WEIGHT = {"central": 1.0, "supporting": 0.6, "peripheral": 0.3}
QUOTE_IMPORTANCE = 0.5

_PROMPTS = {
    EntityKind.QUOTE: prompts.EXTRACT_QUOTES,
    EntityKind.CLAIM: prompts.EXTRACT_POSITIONS,
    EntityKind.ARGUMENT: prompts.EXTRACT_ARGUMENTS,
}


@dataclass
class ExtractionOptions:
    """What to extract and how much.

    Attributes:
        kind: Entity kind to extract.
        author: Author label attached to every entity (``source``).
        depth: Items requested per chunk.
        show_minor: Keep a longer ranked list.
        refine: Run the oracle ranking pass on large pools.
        planning_id: Reuse (or store) the skeleton under this id.
    """

    kind: EntityKind = EntityKind.CLAIM
    author: str | None = None
    depth: int = 5
    show_minor: bool = False
    refine: bool = True
    planning_id: str | None = None


@dataclass
class ExtractionResult:
    run_id: str
    kind: EntityKind
    entities: list[ExtractedEntity]
    skeleton: DocumentSkeleton
    total_extracted: int = 0
    after_deduplication: int = 0
    failed_chunks: list[int] = field(default_factory=list)


# =====================================================================
# Entity builders (one per kind)
# =====================================================================

def _text_of(item: Any, *keys: str) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict):
        for key in keys:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ""


def _str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def _clamp(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, 0.0), 1.0)


def _quote(item: Any) -> tuple[str, float | None, dict[str, Any]]:
    d = item if isinstance(item, dict) else {}
    return (
        _text_of(item, "quote", "text"),
        QUOTE_IMPORTANCE,
        {"context": str(d.get("context") or ""), "significance": str(d.get("significance") or "")},
    )


def _position(item: Any) -> tuple[str, float | None, dict[str, Any]]:
    d = item if isinstance(item, dict) else {}
    label = str(d.get("importance") or "supporting").strip().lower()
    weight = _POSITION_WEIGHT.get(label, _POSITION_WEIGHT["supporting"])
    confidence = _clamp(d.get("confidence"), 0.5)
    return (
        _text_of(item, "position", "claim", "text"),
        round((weight + confidence) / 2, 3),
        {
            "confidence": confidence,
            "importance": label if label in _POSITION_WEIGHT else "supporting",
            "relation_to_thesis": str(
                d.get("relation_to_thesis") or d.get("relationToThesis") or ""
            ),
        },
    )


def _argument(item: Any) -> tuple[str, float | None, dict[str, Any]]:
    d = item if isinstance(item, dict) else {}
    strength = str(d.get("strength") or "moderate").strip().lower()
    return (
        _text_of(item, "conclusion", "text"),
        _STRENGTH_IMPORTANCE.get(strength, _STRENGTH_IMPORTANCE["moderate"]),
        {
            "premises": _str_list(d.get("premises")),
            "counterarguments": _str_list(d.get("counterarguments")),
            "strength": strength if strength in _STRENGTH_IMPORTANCE else "moderate",
        },
    )


_BUILDERS: dict[EntityKind, Callable[[Any], tuple[str, float | None, dict[str, Any]]]] = {
    EntityKind.QUOTE: _quote,
    EntityKind.CLAIM: _position,
    EntityKind.ARGUMENT: _argument,
}


def build_entities(
    kind: EntityKind,
    items: list[Any],
    chunk_index: int,
    source: str,
) -> list[ExtractedEntity]:
    """Turn one chunk's raw oracle items into entities; items without text are skipped."""
    entities = []
    for item in items:
        text, importance, details = _BUILDERS[kind](item)
        if not text:
            continue
        entities.append(ExtractedEntity(
            kind=kind,
            text=text,
            source=source,
            chunk_index=chunk_index,
            importance=importance,
            details=details,
        ))
    return entities


# =====================================================================
# Extraction pass
# =====================================================================

def _extraction_prompt(
    kind: EntityKind,
    chunk: Chunk,
    total: int,
    skeleton: DocumentSkeleton,
    count: int,
) -> str:
    section = skeleton.section_for(chunk.index)
    return _PROMPTS[kind].format(
        thesis=skeleton.main_thesis or "(unknown)",
        theme=skeleton.overarching_theme or "(unknown)",
        key_arguments="; ".join(skeleton.key_arguments[:5]) or prompts.NONE,
        role=section.role.value if section else "unknown",
        relation=(section.relation_to_thesis if section else "") or "unknown",
        number=chunk.index + 1,
        total=total,
        chunk=chunk.text,
        count=count,
    )


async def extract_async(
    engine: CoherenceEngine,
    text: str,
    options: ExtractionOptions | None = None,
    on_progress: ProgressCallback | None = None,
) -> ExtractionResult:
    """Extract entities of ``options.kind`` from *text*.

    Raises:
        EmptyDocumentError: If *text* has no words.
        FatalOracleError, OracleExhaustedError: From the gateway.
    """
    options = options or ExtractionOptions()
    cfg = engine.config
    if word_count(text) == 0:
        raise EmptyDocumentError("Cannot extract from an empty document.")

    run_id = options.planning_id or uuid.uuid4().hex
    chunks = chunk_document(text, run_id, max_words=cfg.extraction_chunk_words)
    progress = ProgressReporter(on_progress, run_id, len(chunks))

    try:
        await progress(RunPhase.SKELETON, "Building document skeleton...")
        skeleton = await engine.planner.get_or_create_skeleton(run_id, text)

        pooled: list[ExtractedEntity] = []
        failed: list[int] = []
        for chunk in chunks:
            n = chunk.index + 1
            await progress(
                RunPhase.EXTRACTION,
                f"Extracting {options.kind.value}s from chunk {n} of {len(chunks)}...",
                current=n,
            )
            reply = await engine.gateway.call(
                _extraction_prompt(options.kind, chunk, len(chunks), skeleton, options.depth),
            )
            try:
                items = parse_json_array(reply)
            except ParseError as e:
                logger.warning("Chunk %d: unparsable extraction reply (%s); skipping.", n, e)
                failed.append(chunk.index)
                await progress(
                    RunPhase.EXTRACTION, f"Chunk {n}: reply was not valid JSON; skipped.", current=n,
                )
            else:
                section = skeleton.section_for(chunk.index)
                source = options.author or (section.title if section and section.title else f"Chunk {n}")
                pooled.extend(build_entities(options.kind, items, chunk.index, source))

            if cfg.inter_chunk_delay_s > 0 and n < len(chunks):
                await asyncio.sleep(cfg.inter_chunk_delay_s)

        await progress(RunPhase.RANKING, f"Ranking and deduplicating {len(pooled)} {options.kind.value}s...")
        unique = deduplicate_entities(pooled)
        ranked = unique
        if options.refine:
            ranked = await refine_ranking(
                engine.gateway, unique, skeleton.main_thesis,
                show_minor=options.show_minor, config=cfg,
            )
    except Exception as e:
        logger.error("Extraction %s failed: %s", run_id, e)
        await progress(RunPhase.FAILED, f"Extraction failed: {e}")
        raise

    await progress(RunPhase.COMPLETED, f"Extracted {len(ranked)} {options.kind.value}s.")
    return ExtractionResult(
        run_id=run_id,
        kind=options.kind,
        entities=ranked,
        skeleton=skeleton,
        total_extracted=len(pooled),
        after_deduplication=len(unique),
        failed_chunks=failed,
    )


def extract(
    engine: CoherenceEngine,
    text: str,
    options: ExtractionOptions | None = None,
    on_progress: ProgressCallback | None = None,
) -> ExtractionResult:
    """Sync entry point for :func:`extract_async`."""
    return asyncio.run(extract_async(engine, text, options, on_progress))


# =====================================================================
# Markdown rendering
# =====================================================================

_TITLES = {
    EntityKind.QUOTE: "Key Quotes",
    EntityKind.CLAIM: "Author Positions",
    EntityKind.ARGUMENT: "Arguments",
}


def render_entities_markdown(result: ExtractionResult) -> str:
    """Render an extraction result as a markdown document."""
    md = [f"# {_TITLES[result.kind]}", ""]
    if result.skeleton.main_thesis:
        md += [f"**Main thesis:** {result.skeleton.main_thesis}", ""]
    md += [
        f"*{len(result.entities)} shown, {result.after_deduplication} unique, "
        f"{result.total_extracted} extracted.*",
        "",
    ]

    for i, e in enumerate(result.entities, start=1):
        d = e.details
        if e.kind is EntityKind.ARGUMENT:
            md += [f"## {i}. {e.text}", "", f"**Strength:** {d.get('strength', 'moderate')}", ""]
            if d.get("premises"):
                md += ["**Premises:**", *[f"- {p}" for p in d["premises"]], ""]
            if d.get("counterarguments"):
                md += ["**Counterarguments addressed:**", *[f"- {c}" for c in d["counterarguments"]], ""]
        elif e.kind is EntityKind.QUOTE:
            md += [f"> {e.text}", ""]
            if d.get("context"):
                md += [f"*Context:* {d['context']}", ""]
            if d.get("significance"):
                md += [f"*Significance:* {d['significance']}", ""]
        else:
            md += [f"{i}. **{e.text}** [{d.get('importance', 'supporting')}]"]
            if d.get("relation_to_thesis"):
                md += [f"   - Relation to thesis: {d['relation_to_thesis']}"]
            md += [""]
        if e.source:
            md += [f"<sub>Source: {e.source}</sub>", ""]

    return "\n".join(md).rstrip() + "\n"
