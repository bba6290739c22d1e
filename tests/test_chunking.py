"""Tests for word-bounded chunking."""

import pytest

from coherent_engine.utils.chunking import (
    chunk_document,
    chunk_text,
    expected_chunk_count,
    generate_chunk_id,
    should_use_coherent_processing,
    word_count,
)
from conftest import make_document


def test_chunk_text_basic():
    text = make_document(2500)
    chunks = chunk_text(text, max_words=1000)

    assert len(chunks) == 3
    assert [word_count(c) for c in chunks] == [1000, 1000, 500]


@pytest.mark.parametrize("n_words,max_words", [(1, 1), (7, 3), (1000, 1000), (1001, 1000), (5000, 1000)])
def test_chunks_reproduce_word_sequence(n_words, max_words):
    text = make_document(n_words)
    chunks = chunk_text(text, max_words=max_words)

    assert " ".join(chunks).split() == text.split()
    assert len(chunks) == expected_chunk_count(text, max_words)


def test_whitespace_runs_collapse():
    text = "alpha\n\nbeta\tgamma   delta"
    assert chunk_text(text, max_words=2) == ["alpha beta", "gamma delta"]


def test_oversized_token_is_its_own_word():
    token = "x" * 10_000
    assert chunk_text(f"a {token} b", max_words=1) == ["a", token, "b"]


def test_empty_and_whitespace_input():
    assert chunk_text("") == []
    assert chunk_text("   \n\t ") == []


def test_invalid_bound():
    with pytest.raises(ValueError, match="max_words must be >= 1"):
        chunk_document("some text", "doc", max_words=0)


def test_chunk_offsets_and_ids():
    text = make_document(25)
    chunks = chunk_document(text, "doc-1", max_words=10)

    assert [(c.start_word, c.end_word) for c in chunks] == [(0, 10), (10, 20), (20, 25)]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert chunks[2].word_count == 5
    assert chunks[0].chunk_id == generate_chunk_id("doc-1", 0, chunks[0].text)
    assert len({c.chunk_id for c in chunks}) == 3


def test_chunk_id_is_deterministic():
    assert generate_chunk_id("d", 0, "text") == generate_chunk_id("d", 0, "text")
    assert generate_chunk_id("d", 0, "text") != generate_chunk_id("d", 1, "text")


def test_should_use_coherent_processing():
    assert not should_use_coherent_processing(make_document(1999))
    assert should_use_coherent_processing(make_document(2000))
