"""String normalisation utilities for labels and entity payloads."""

from __future__ import annotations

import re
import unicodedata

_STRIP_RE = re.compile(r"[^a-z0-9\s]")
_LABEL_RE = re.compile(r"[^a-z-]")
_LABEL_SEP_RE = re.compile(r"[\s_]+")

# Words too common to count as overlap between two theses.
STOPWORDS = frozenset(
    """
    a an and are as at be been but by for from has have in is it its of on
    or that the their there these this those to was were which will with
    not no can may must should would could than then so such also into
    """.split()
)


def normalise_text(text: str) -> str:
    """Lowercase, strip accents/punctuation, collapse whitespace."""
    if not isinstance(text, str):
        raise TypeError(f"Expected str, got {type(text).__name__}")

    s = unicodedata.normalize("NFD", text)
    s = "".join(c for c in s if unicodedata.category(c) != "Mn")
    s = _STRIP_RE.sub("", s.lower())
    return " ".join(s.split())


def normalise_label(text: str) -> str:
    """Reduce a free-form oracle answer to a ``kebab-case`` label.

    ``'"Logical-Cohesiveness".'`` becomes ``"logical-cohesiveness"``, and so do
    ``"logical cohesiveness"`` and ``"logical_cohesiveness"``.
    """
    return _LABEL_RE.sub("", _LABEL_SEP_RE.sub("-", text.strip().lower()))


def normalise_payload(text: str) -> str:
    """Lowercase and collapse whitespace, nothing else.

    Punctuation and accents are kept, so ``"U.S."`` stays distinct from ``"us"``.
    """
    return " ".join(text.lower().split())


def significant_words(text: str) -> set[str]:
    """Normalised words of *text* minus stopwords and one-letter tokens."""
    return {
        w for w in normalise_text(text).split()
        if len(w) > 1 and w not in STOPWORDS
    }

