"""Lenient JSON decoding for oracle replies.

Oracles wrap JSON in prose, markdown fences, or trailing commentary.
These helpers return the first balanced ``{...}`` (or ``[...]``) span
that parses, and raise :class:`ParseError` otherwise.  Callers decide
how to degrade.
"""

from __future__ import annotations

import json
from typing import Any

from coherent_engine.errors import ParseError


def _balanced_spans(text: str, opener: str, closer: str):
    """Yield every balanced span starting at an *opener*, outermost first."""
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_str = False
        escape = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    yield text[start : i + 1]
                    break
        start = text.find(opener, start + 1)


def _extract(text: str, opener: str, closer: str, kind: type) -> Any:
    text = (text or "").strip()
    if not text:
        raise ParseError("Oracle returned an empty response.")

    # Fast path: exact JSON.
    try:
        obj = json.loads(text)
    except ValueError:
        pass
    else:
        if isinstance(obj, kind):
            return obj

    for candidate in _balanced_spans(text, opener, closer):
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, kind):
            return obj

    raise ParseError(
        f"No JSON {kind.__name__} found in oracle response: {text[:120]!r}"
    )


def parse_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object embedded in *text*.

    Raises:
        ParseError: If no parsable object is present.
    """
    return _extract(text, "{", "}", dict)


def parse_json_array(text: str) -> list[Any]:
    """Return the first JSON array embedded in *text*.

    Raises:
        ParseError: If no parsable array is present.
    """
    return _extract(text, "[", "]", list)
