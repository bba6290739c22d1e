"""Entity deduplication and ranking: post-pass over pooled extractions.

Two stages, from cheap to expensive:

1. **Deterministic collapsing**: normalise payload text (lowercase,
   collapse whitespace).  Two entities are duplicates when one
   normalised form is a substring of the other; the longer one survives
   whatever the order of appearance.  Survivors are ordered by
   originating chunk (document order), then importance (descending).
2. **Oracle-assisted ranking** (optional): for pools above
   ``ranking_min_entities``, the ``ranking_pool_size`` most promising
   candidates are numbered and sent to the oracle, which returns the
   indices to keep in ranked order.  An unusable reply keeps the first
   ``top_n`` candidates.
"""

from __future__ import annotations

import logging

from coherent_engine.agents import prompts
from coherent_engine.agents.gateway import OracleGateway
from coherent_engine.config import EngineConfig
from coherent_engine.errors import ParseError
from coherent_engine.models.base import ExtractedEntity
from coherent_engine.utils.json_parse import parse_json_array
from coherent_engine.utils.sanitize import normalise_payload

logger = logging.getLogger(__name__)


def _importance(entity: ExtractedEntity) -> float:
    return entity.importance if entity.importance is not None else 0.0


def document_order(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Chunk index ascending, then importance descending (stable)."""
    return sorted(entities, key=lambda e: (e.chunk_index, -_importance(e)))


# =====================================================================
# Stage 1: deterministic collapsing
# =====================================================================

def deduplicate_entities(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Collapse near-duplicates, keeping the most complete wording.

    Args:
        entities: Pooled entities from every chunk, any order.

    Returns:
        Survivors in document order.  Entities with a blank payload are
        dropped.
    """
    keyed = [(normalise_payload(e.text), pos, e) for pos, e in enumerate(entities)]
    keyed = [k for k in keyed if k[0]]

    # Longest first, so a containing entity is always accepted before
    # anything it contains; ties keep first occurrence.
    keyed.sort(key=lambda k: (-len(k[0]), k[1]))

    accepted: list[tuple[str, int, ExtractedEntity]] = []
    for norm, pos, entity in keyed:
        if any(norm in kept for kept, _, _ in accepted):
            continue
        accepted.append((norm, pos, entity))

    survivors = [e for _, _, e in sorted(accepted, key=lambda k: k[1])]
    dropped = len(entities) - len(survivors)
    if dropped:
        logger.info("Deduplication: %d -> %d entities (%d dropped).",
                    len(entities), len(survivors), dropped)
    return document_order(survivors)


# =====================================================================
# Stage 2: ranking
# =====================================================================

def rank_candidates(entities: list[ExtractedEntity], pool_size: int) -> list[ExtractedEntity]:
    """The *pool_size* most promising entities, by importance (stable)."""
    return sorted(entities, key=lambda e: -_importance(e))[:pool_size]


def _format_items(entities: list[ExtractedEntity]) -> str:
    lines = []
    for i, e in enumerate(entities, start=1):
        tag = f" [importance: {e.importance:.2f}]" if e.importance is not None else ""
        lines.append(f"{i}. {e.text}{tag}")
    return "\n".join(lines)


def select_ranked(
    candidates: list[ExtractedEntity],
    indices: list[object],
    top_n: int,
) -> list[ExtractedEntity]:
    """Map the oracle's 1-based *indices* back onto *candidates*.

    Non-integer, out-of-range and repeated indices are skipped; at most
    *top_n* entities are returned, in the oracle's order.
    """
    picked: list[ExtractedEntity] = []
    seen: set[int] = set()
    for raw in indices:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            continue
        i = int(raw)
        if i != raw or not 1 <= i <= len(candidates) or i in seen:
            continue
        seen.add(i)
        picked.append(candidates[i - 1])
        if len(picked) >= top_n:
            break
    return picked


async def refine_ranking(
    gateway: OracleGateway,
    entities: list[ExtractedEntity],
    thesis: str,
    *,
    show_minor: bool = False,
    config: EngineConfig | None = None,
) -> list[ExtractedEntity]:
    """Let the oracle pick and rank the entities most central to *thesis*.

    Pools at or below ``ranking_min_entities`` are returned unchanged.
    The kept entities are returned in document order.

    Raises:
        FatalOracleError, OracleExhaustedError: From the gateway.
    """
    cfg = config or EngineConfig()
    if len(entities) <= cfg.ranking_min_entities:
        return entities

    top_n = cfg.ranking_top_n_minor if show_minor else cfg.ranking_top_n
    candidates = rank_candidates(entities, cfg.ranking_pool_size)
    reply = await gateway.call(prompts.RANK_ENTITIES.format(
        thesis=thesis, items=_format_items(candidates), top_n=top_n,
    ))

    try:
        picked = select_ranked(candidates, parse_json_array(reply), top_n)
    except ParseError as e:
        logger.warning("Ranking reply unusable (%s); keeping top %d by importance.", e, top_n)
        picked = []
    if not picked:
        picked = candidates[:top_n]

    logger.info("Ranking: %d -> %d entities.", len(entities), len(picked))
    return document_order(picked)
