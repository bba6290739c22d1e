"""Tests for quote, position and argument extraction."""

import json

import pytest

from coherent_engine.config import EntityKind
from coherent_engine.errors import EmptyDocumentError, FatalOracleError
from coherent_engine.storage.store import InMemoryRunStore
from coherent_engine.workflow.extraction import (
    ExtractionOptions,
    build_entities,
    extract,
    extract_async,
    render_entities_markdown,
)
from coherent_engine.workflow.pipeline import CoherenceEngine
from conftest import FakeOracle, make_document


def _engine(oracle, config, store=None):
    return CoherenceEngine(oracle, store, config)


class TestBuilders:
    def test_positions_blend_weight_and_confidence(self):
        items = [
            {"position": "Freedom is necessity", "importance": "central", "confidence": 0.9,
             "relationToThesis": "states it"},
            {"claim": "Minor aside", "importance": "peripheral", "confidence": "high"},
            {"position": "Unlabelled", "importance": "whatever", "confidence": 3},
        ]
        entities = build_entities(EntityKind.CLAIM, items, 2, "Hegel")

        assert [e.importance for e in entities] == [0.95, 0.4, 0.8]
        assert entities[0].details["relation_to_thesis"] == "states it"
        assert entities[1].details["confidence"] == 0.5
        assert entities[2].details["importance"] == "supporting"
        assert all(e.chunk_index == 2 and e.source == "Hegel" for e in entities)

    def test_arguments_map_strength(self):
        items = [
            {"conclusion": "C1", "premises": ["p1", "p2"], "strength": "strong"},
            {"conclusion": "C2", "premises": "only one", "strength": "shaky"},
            {"premises": ["no conclusion"]},
        ]
        entities = build_entities(EntityKind.ARGUMENT, items, 0, "")

        assert [e.text for e in entities] == ["C1", "C2"]
        assert [e.importance for e in entities] == [1.0, 0.5]
        assert entities[1].details["premises"] == ["only one"]
        assert entities[1].details["strength"] == "moderate"

    def test_quotes_accept_bare_strings(self):
        items = ["  A bare quote. ", {"quote": "Dict quote", "significance": "key"}, 42]
        entities = build_entities(EntityKind.QUOTE, items, 1, "")

        assert [e.text for e in entities] == ["A bare quote.", "Dict quote"]
        assert all(e.importance == 0.5 for e in entities)
        assert entities[1].details["significance"] == "key"


class TestExtract:
    @pytest.mark.asyncio
    async def test_positions_deduplicated_across_chunks(self, config, progress):
        replies = [
            json.dumps([{"position": "The state is the actuality of freedom", "importance": "central"}]),
            json.dumps([
                {"position": "The state is the actuality of freedom in history", "importance": "central"},
                {"position": "Property precedes contract"},
            ]),
        ]
        oracle = FakeOracle(extract_positions=replies)
        result = await extract_async(
            _engine(oracle, config), make_document(3000), ExtractionOptions(author="Hegel"),
            on_progress=progress,
        )

        assert result.total_extracted == 3
        assert result.after_deduplication == 2
        assert [e.text for e in result.entities] == [
            "The state is the actuality of freedom in history", "Property precedes contract",
        ]
        assert all(e.source == "Hegel" for e in result.entities)
        assert oracle.calls("RANK ENTITIES") == []
        assert progress.phases()[0] == "skeleton"
        assert progress.phases()[-1] == "completed"

    @pytest.mark.asyncio
    async def test_chunk_prompts_carry_skeleton_context(self, config):
        oracle = FakeOracle()
        await extract_async(
            _engine(oracle, config), make_document(3000), ExtractionOptions(kind=EntityKind.QUOTE, depth=7),
        )
        prompts = oracle.calls("EXTRACT QUOTES")
        assert len(prompts) == 2
        assert "Coherence across chunks" in prompts[0]
        assert "introduction" in prompts[0]
        assert "argument" in prompts[1]
        assert "Extract up to 7 quotes" in prompts[0]

    @pytest.mark.asyncio
    async def test_unparsable_chunk_is_skipped(self, config):
        replies = ["no json at all", json.dumps([{"quote": "Kept"}])]
        result = await extract_async(
            _engine(FakeOracle(extract_quotes=replies), config),
            make_document(3000),
            ExtractionOptions(kind=EntityKind.QUOTE),
        )
        assert result.failed_chunks == [0]
        assert [e.text for e in result.entities] == ["Kept"]
        assert result.entities[0].source == "Body"

    @pytest.mark.asyncio
    async def test_large_pools_are_ranked(self, config):
        items = [{"conclusion": f"conclusion {chr(65 + i)}", "strength": "weak"} for i in range(12)]
        oracle = FakeOracle(extract_arguments=json.dumps(items), rank_entities="[2, 1]")
        result = await extract_async(
            _engine(oracle, config), make_document(1000), ExtractionOptions(kind=EntityKind.ARGUMENT),
        )
        assert len(oracle.calls("RANK ENTITIES")) == 1
        # Same chunk, same importance: the oracle's order breaks the tie.
        assert [e.text for e in result.entities] == ["conclusion B", "conclusion A"]

    @pytest.mark.asyncio
    async def test_skeleton_reused_by_planning_id(self, config):
        store = InMemoryRunStore()
        oracle = FakeOracle()
        engine = _engine(oracle, config, store)
        options = ExtractionOptions(planning_id="book-1")

        first = await extract_async(engine, make_document(1000), options)
        second = await extract_async(engine, make_document(1000), options)

        assert len(oracle.calls("DOCUMENT SKELETON")) == 1
        assert first.run_id == second.run_id == "book-1"

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, config, progress):
        oracle = FakeOracle(extract_positions=FatalOracleError("denied"))
        with pytest.raises(FatalOracleError):
            await extract_async(_engine(oracle, config), make_document(100), on_progress=progress)
        assert progress.phases()[-1] == "failed"

    @pytest.mark.asyncio
    async def test_empty_document(self, oracle, config):
        with pytest.raises(EmptyDocumentError):
            await extract_async(_engine(oracle, config), "")

    def test_sync_entry_point(self, config):
        oracle = FakeOracle(extract_quotes=json.dumps([{"quote": "Q"}]))
        result = extract(_engine(oracle, config), "a short text", ExtractionOptions(kind=EntityKind.QUOTE))
        assert [e.text for e in result.entities] == ["Q"]


def test_markdown_rendering(config):
    oracle = FakeOracle(extract_arguments=json.dumps([
        {"conclusion": "Therefore C", "premises": ["P1"], "counterarguments": ["But X"], "strength": "strong"},
    ]))
    result = extract(_engine(oracle, config), "text", ExtractionOptions(kind=EntityKind.ARGUMENT, author="Kant"))
    md = render_entities_markdown(result)

    assert md.startswith("# Arguments\n")
    assert "**Main thesis:** Coherence across chunks" in md
    assert "## 1. Therefore C" in md
    assert "- P1" in md
    assert "**Counterarguments addressed:**" in md
    assert "<sub>Source: Kant</sub>" in md
