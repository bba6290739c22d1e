"""Mode detection and initial-state extraction.

Both calls go through the :class:`OracleGateway`; oracle failures
propagate to the caller.  A reply that cannot be interpreted is not an
error: detection falls back to the configured default mode and state
extraction falls back to the mode's empty state.
"""

from __future__ import annotations

import logging

from coherent_engine.agents import prompts
from coherent_engine.agents.gateway import OracleGateway
from coherent_engine.config import CoherenceMode
from coherent_engine.errors import ParseError
from coherent_engine.executors.merge import merge_state
from coherent_engine.models.state import (
    CoherenceState,
    PhilosophicalState,
    create_initial_state,
)
from coherent_engine.utils.json_parse import parse_json_object
from coherent_engine.utils.sanitize import normalise_label

logger = logging.getLogger(__name__)


def parse_mode(reply: str) -> CoherenceMode | None:
    """Interpret an oracle reply as a mode name, or ``None``.

    Accepts the bare name with stray quotes, punctuation or casing
    (``'"Philosophical."'``).  A reply naming more than one mode on
    separate tokens is resolved to the first exact token match.
    """
    label = normalise_label(reply)
    try:
        return CoherenceMode(label)
    except ValueError:
        pass
    for token in reply.split():
        try:
            return CoherenceMode(normalise_label(token))
        except ValueError:
            continue
    return None


async def detect_mode(
    gateway: OracleGateway,
    excerpt: str,
    default: CoherenceMode = CoherenceMode.LOGICAL_COHESIVENESS,
    *,
    max_chars: int = 2000,
) -> CoherenceMode:
    """Ask the oracle to classify *excerpt*; fall back to *default*.

    Args:
        gateway: Oracle gateway.
        excerpt: Representative opening text (truncated to *max_chars*).
        default: Mode used when the reply is not a known mode name.
        max_chars: Excerpt length sent to the oracle.

    Raises:
        FatalOracleError, OracleExhaustedError: From the gateway.
    """
    reply = await gateway.call(prompts.MODE_DETECTION.format(excerpt=excerpt[:max_chars]))
    mode = parse_mode(reply)
    if mode is None:
        logger.warning(
            "Unrecognised mode reply %r, using default %s.", reply[:80], default.value,
        )
        return default
    logger.info("Detected coherence mode: %s", mode.value)
    return mode


async def extract_initial_state(
    gateway: OracleGateway,
    mode: CoherenceMode,
    first_chunk: str,
) -> CoherenceState:
    """Populate *mode*'s initial state from the opening chunk.

    The oracle's JSON is treated as a partial update on the empty state,
    so missing or ill-typed attributes keep their defaults.
    """
    empty = create_initial_state(mode)
    reply = await gateway.call(prompts.INITIAL_STATE.format(
        mode=mode.value,
        chunk=first_chunk,
        schema=prompts.state_schema(mode),
    ))
    try:
        extracted = parse_json_object(reply)
    except ParseError as e:
        logger.warning("Initial state reply was not JSON (%s); starting from empty state.", e)
        return empty

    state = merge_state(empty, extracted)
    if isinstance(state, PhilosophicalState):
        # Numbering always restarts at the first chunk.
        state = state.model_copy(update={"last_chapter_number": 0})
    return state
