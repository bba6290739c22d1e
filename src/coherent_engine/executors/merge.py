"""State merge: fold a partial oracle update into the accumulated state.

Rules, attribute by attribute:

- list + list   -> concatenation, current first (no deduplication here).
- dict + dict   -> entry-wise overlay, update wins on shared keys.
- anything else -> update wins when present, current kept when omitted.

The ``mode`` tag is never touched.  The function is pure: merging
``U1`` then ``U2`` equals merging one update whose lists are ``U1``'s
followed by ``U2``'s, and merging an empty update returns an equal state.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from coherent_engine.models.state import CoherenceState, sanitize_update

logger = logging.getLogger(__name__)


def merge_state(
    current: CoherenceState,
    update: Mapping[str, Any] | None,
) -> CoherenceState:
    """Return a new state with *update* folded into *current*.

    Args:
        current: The accumulated state (left untouched).
        update: Partial update, typically the oracle's ``state_update``.
            Ill-typed or unknown attributes are dropped first (see
            :func:`~coherent_engine.models.state.sanitize_update`).

    Returns:
        A fresh state of the same mode.
    """
    clean = sanitize_update(current.mode, update)
    if not clean:
        return current.model_copy(deep=True)

    data = current.model_dump()
    for key, value in clean.items():
        existing = data.get(key)
        if isinstance(existing, list) and isinstance(value, list):
            data[key] = [*existing, *value]
        elif isinstance(existing, dict) and isinstance(value, dict):
            data[key] = {**existing, **value}
        else:
            data[key] = value

    merged = type(current).model_validate(data)
    logger.debug("Merged %d attribute(s) into %s state.", len(clean), current.mode)
    return merged


def combine_updates(*updates: Mapping[str, Any] | None) -> dict[str, Any]:
    """Concatenate several raw updates into one, under the same rules.

    Used when a single step produces more than one partial update (for
    instance an oracle-reported update plus a locally derived one).
    Values are combined without schema checks; :func:`merge_state`
    sanitises the result.
    """
    combined: dict[str, Any] = {}
    for update in updates:
        for key, value in (update or {}).items():
            if value is None:
                continue
            existing = combined.get(key)
            if isinstance(existing, list) and isinstance(value, list):
                combined[key] = [*existing, *value]
            elif isinstance(existing, dict) and isinstance(value, dict):
                combined[key] = {**existing, **value}
            else:
                combined[key] = value
    return combined
