"""Word-bounded text chunking.

Splits a document into ordered, non-overlapping chunks of at most
*max_words* whitespace-delimited words.  No word is dropped or
reordered: ``" ".join(c.text for c in chunks)`` equals
``" ".join(text.split())`` for every input.

Chunks carry word offsets so that downstream steps (skeleton
sections, resumed runs) can refer back to the original document.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Chunk:
    """A contiguous word span from a document."""

    chunk_id: str
    index: int  # 0-based position within the document
    text: str
    start_word: int  # inclusive offset into the document's word sequence
    end_word: int  # exclusive offset

    @property
    def word_count(self) -> int:
        return self.end_word - self.start_word


def generate_chunk_id(document_id: str, index: int, chunk_text: str) -> str:
    """Deterministic chunk ID from document id + chunk index + chunk text."""
    payload = json.dumps(
        {
            "document_id": document_id,
            "chunk_index": index,
            "chunk_text": chunk_text,
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def word_count(text: str) -> int:
    """Number of whitespace-delimited words in *text*."""
    return len(text.split())


def expected_chunk_count(text: str, max_words: int) -> int:
    """Number of chunks :func:`chunk_text` returns: ``ceil(word_count / max_words)``."""
    return math.ceil(word_count(text) / max_words)


def chunk_text(text: str, max_words: int = 1000) -> list[str]:
    """Split *text* into word-bounded chunk strings.

    Args:
        text: Full document text.
        max_words: Maximum words per chunk (``>= 1``).

    Returns:
        Ordered chunk texts; empty for empty or whitespace-only input.
    """
    return [c.text for c in chunk_document(text, "", max_words=max_words)]


def chunk_document(
    text: str,
    document_id: str,
    *,
    max_words: int = 1000,
) -> list[Chunk]:
    """Split *text* into :class:`Chunk` objects of at most *max_words* words.

    Whitespace runs (spaces, tabs, newlines) collapse to single spaces
    inside a chunk; a single token longer than any character budget is
    still one word, so it always fits in its own chunk.

    Raises:
        ValueError: If *max_words* is smaller than 1.
    """
    if max_words < 1:
        raise ValueError(f"max_words must be >= 1, got {max_words}")

    words = text.split()
    if not words:
        return []

    chunks: list[Chunk] = []
    for index, start in enumerate(range(0, len(words), max_words)):
        end = min(start + max_words, len(words))
        piece = " ".join(words[start:end])
        chunks.append(
            Chunk(
                chunk_id=generate_chunk_id(document_id, index, piece),
                index=index,
                text=piece,
                start_word=start,
                end_word=end,
            )
        )
    return chunks


def should_use_coherent_processing(text: str, threshold_words: int = 2000) -> bool:
    """True when *text* is long enough to warrant chunk-by-chunk processing."""
    return word_count(text) >= threshold_words
