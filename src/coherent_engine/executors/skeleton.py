"""Skeleton planning: a whole-document plan computed once per document.

Two strategies, chosen by word count:

1. **Single pass** (below ``large_document_threshold``): the first
   ``skeleton_preview_sections`` preview sections of
   ``skeleton_preview_words`` words, each cut to
   ``skeleton_preview_chars`` characters, go into one oracle call.
2. **Two tier** (at or above the threshold): the text is cut into
   macro-segments of ``macro_segment_words`` words, each planned with the
   single-pass strategy concurrently, then one synthesis call merges the
   partial skeletons.  If the synthesis reply is unusable, the partials
   are concatenated instead; the resulting section list is never empty.
   A segment that fails cancels the segments still in flight.

Only the final skeleton is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from pydantic import ValidationError

from coherent_engine.agents import prompts
from coherent_engine.agents.gateway import OracleGateway
from coherent_engine.config import EngineConfig
from coherent_engine.errors import EmptyDocumentError, ParseError, SkeletonSynthesisError
from coherent_engine.models.skeleton import DocumentSkeleton, SectionRole, SkeletonSection
from coherent_engine.storage.store import RunStore
from coherent_engine.utils.chunking import Chunk, chunk_document, chunk_text, word_count
from coherent_engine.utils.json_parse import parse_json_object

logger = logging.getLogger(__name__)

UNKNOWN_THESIS = "Unable to extract thesis"
UNKNOWN_THEME = "Unable to extract theme"
MULTI_PART_ARC = "Multi-part document"


def new_planning_id() -> str:
    return uuid.uuid4().hex


class SkeletonPlanner:
    """Builds (and optionally persists) :class:`DocumentSkeleton` plans.

    Args:
        gateway: Oracle gateway.
        store: Optional run store; when given, final skeletons are saved
            and :meth:`get_or_create_skeleton` can reuse them.
        config: Engine configuration.
    """

    def __init__(
        self,
        gateway: OracleGateway,
        store: RunStore | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._config = config or EngineConfig()

    # ── Public API ──────────────────────────────────────────────────

    async def plan(self, text: str, planning_id: str | None = None) -> DocumentSkeleton:
        """Plan *text* with the strategy its length calls for.

        Raises:
            EmptyDocumentError: If *text* has no words.
            FatalOracleError, OracleExhaustedError: From the gateway.
        """
        total = word_count(text)
        if total == 0:
            raise EmptyDocumentError("Cannot plan an empty document.")
        planning_id = planning_id or new_planning_id()

        if total >= self._config.large_document_threshold:
            logger.info("Planning two-tier skeleton for %d words.", total)
            skeleton = await self._two_tier(text, planning_id)
        else:
            logger.info("Planning single-pass skeleton for %d words.", total)
            skeleton = await self._single_pass(text, planning_id)

        if self._store is not None:
            await self._store.create_skeleton(skeleton)
        return skeleton

    async def get_or_create_skeleton(self, planning_id: str, text: str) -> DocumentSkeleton:
        """Return the stored skeleton for *planning_id*, planning it if absent."""
        if self._store is not None:
            existing = await self._store.read_skeleton(planning_id)
            if existing is not None:
                logger.info("Reusing stored skeleton %s.", planning_id)
                return existing
        return await self.plan(text, planning_id)

    # ── Single pass ─────────────────────────────────────────────────

    async def _single_pass(self, text: str, planning_id: str) -> DocumentSkeleton:
        cfg = self._config
        previews = chunk_text(text, cfg.skeleton_preview_words)
        shown = previews[: cfg.skeleton_preview_sections]
        preview_block = "\n\n".join(
            f"--- SECTION {i + 1} ---\n{p[: cfg.skeleton_preview_chars]}..."
            for i, p in enumerate(shown)
        )
        reply = await self._gateway.call(prompts.SKELETON.format(
            count=len(previews), shown=len(shown), previews=preview_block,
        ))

        total = word_count(text)
        try:
            return DocumentSkeleton.model_validate({
                **parse_json_object(reply),
                "planning_id": planning_id,
                "total_word_count": total,
                "tier": "single",
            })
        except (ParseError, ValidationError) as e:
            logger.warning("Skeleton reply unusable (%s); using placeholder skeleton.", e)
            return DocumentSkeleton(
                planning_id=planning_id,
                main_thesis=UNKNOWN_THESIS,
                overarching_theme=UNKNOWN_THEME,
                total_word_count=total,
            )

    # ── Two tier ────────────────────────────────────────────────────

    async def _two_tier(self, text: str, planning_id: str) -> DocumentSkeleton:
        segments = chunk_document(text, planning_id, max_words=self._config.macro_segment_words)
        semaphore = asyncio.Semaphore(self._config.skeleton_concurrency)

        async def plan_segment(segment: Chunk) -> DocumentSkeleton:
            async with semaphore:
                partial = await self._single_pass(
                    segment.text, f"{planning_id}-part-{segment.index}",
                )
            return _offset_sections(partial, segment)

        tasks = [asyncio.ensure_future(plan_segment(s)) for s in segments]
        try:
            partials = list(await asyncio.gather(*tasks))
        except BaseException:
            # One segment failed (or we were cancelled): stop the rest.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        total = word_count(text)

        try:
            skeleton = await self._synthesise(partials, planning_id, total)
        except SkeletonSynthesisError as e:
            logger.warning("Skeleton synthesis failed (%s); concatenating partials.", e)
            skeleton = self._concatenate(partials, segments, planning_id, total)

        if not skeleton.sections:
            skeleton = skeleton.model_copy(update={
                "sections": _flatten_sections(partials) or _sections_per_segment(partials, segments),
            })
        return skeleton

    async def _synthesise(
        self,
        partials: list[DocumentSkeleton],
        planning_id: str,
        total: int,
    ) -> DocumentSkeleton:
        summary = "\n\n".join(
            f"--- SEGMENT {i + 1} ---\n"
            f"Thesis: {p.main_thesis}\n"
            f"Key Arguments: {', '.join(p.key_arguments)}\n"
            f"Central Concepts: {', '.join(p.central_concepts)}"
            for i, p in enumerate(partials)
        )
        reply = await self._gateway.call(prompts.SKELETON_SYNTHESIS.format(
            count=len(partials), partials=summary,
        ))
        try:
            return DocumentSkeleton.model_validate({
                **parse_json_object(reply),
                "planning_id": planning_id,
                "total_word_count": total,
                "tier": "two-tier",
            })
        except (ParseError, ValidationError) as e:
            raise SkeletonSynthesisError(str(e)) from e

    def _concatenate(
        self,
        partials: list[DocumentSkeleton],
        segments: list[Chunk],
        planning_id: str,
        total: int,
    ) -> DocumentSkeleton:
        first = partials[0]
        concepts = list(dict.fromkeys(c for p in partials for c in p.central_concepts))
        sections = _flatten_sections(partials) or _sections_per_segment(partials, segments)
        return DocumentSkeleton(
            planning_id=planning_id,
            main_thesis=first.main_thesis,
            overarching_theme=first.overarching_theme,
            sections=sections,
            key_arguments=[a for p in partials for a in p.key_arguments][
                : self._config.fallback_key_arguments
            ],
            central_concepts=concepts[: self._config.fallback_central_concepts],
            narrative_arc=MULTI_PART_ARC,
            total_word_count=total,
            tier="two-tier",
        )


# ── Helpers ─────────────────────────────────────────────────────────

def _offset_sections(partial: DocumentSkeleton, segment: Chunk) -> DocumentSkeleton:
    """Shift a partial's word ranges into whole-document coordinates."""
    sections = []
    for s in partial.sections:
        if s.word_range is not None:
            start, end = s.word_range
            word_range = (segment.start_word + start, segment.start_word + end)
        else:
            word_range = (segment.start_word, segment.end_word)
        sections.append(s.model_copy(update={"word_range": word_range}))
    return partial.model_copy(update={"sections": sections})


def _flatten_sections(partials: list[DocumentSkeleton]) -> list[SkeletonSection]:
    flat = [s for p in partials for s in p.sections]
    return [s.model_copy(update={"index": i}) for i, s in enumerate(flat)]


def _sections_per_segment(
    partials: list[DocumentSkeleton],
    segments: list[Chunk],
) -> list[SkeletonSection]:
    """One section per macro-segment, for partials that produced none."""
    return [
        SkeletonSection(
            index=i,
            title=f"Part {i + 1}",
            role=SectionRole.ARGUMENT,
            key_points=p.key_arguments[:3],
            relation_to_thesis=p.main_thesis,
            word_range=(seg.start_word, seg.end_word),
        )
        for i, (p, seg) in enumerate(zip(partials, segments))
    ]


