"""Tests for skeleton planning (single pass, two tier, fallbacks, reuse)."""

import asyncio
import json

import pytest

from coherent_engine.agents.gateway import OracleGateway
from coherent_engine.config import EngineConfig
from coherent_engine.errors import EmptyDocumentError, FatalOracleError
from coherent_engine.executors.skeleton import (
    MULTI_PART_ARC,
    UNKNOWN_THESIS,
    SkeletonPlanner,
)
from coherent_engine.models.skeleton import DocumentSkeleton, SectionRole
from coherent_engine.storage.store import InMemoryRunStore
from conftest import FakeOracle, make_document


def _planner(oracle, config, store=None):
    return SkeletonPlanner(OracleGateway.from_config(oracle, config), store, config)


@pytest.fixture
def small_config(config):
    config.large_document_threshold = 1000
    config.macro_segment_words = 400
    return config


def _first_word(prompt: str) -> str:
    return prompt.split("--- SECTION 1 ---\n", 1)[1].split()[0]


def _partial(prompt: str) -> str:
    # One partial per segment; the thesis names the first preview word.
    first_word = _first_word(prompt)
    return json.dumps({
        "main_thesis": f"thesis from {first_word}",
        "overarching_theme": "theme",
        "sections": [{"index": 0, "title": f"from {first_word}", "role": "argument"}],
        "key_arguments": [f"argument {first_word}"],
        "central_concepts": ["shared", first_word],
    })


class TestSinglePass:
    @pytest.mark.asyncio
    async def test_plans_from_previews(self, oracle, config):
        skeleton = await _planner(oracle, config).plan(make_document(5000))

        assert skeleton.tier == "single"
        assert skeleton.main_thesis.startswith("Coherence")
        assert [s.role for s in skeleton.sections] == [SectionRole.INTRODUCTION, SectionRole.ARGUMENT]
        assert skeleton.total_word_count == 5000
        prompt = oracle.calls("DOCUMENT SKELETON")[0]
        assert "DOCUMENT (2 sections, showing first 2)" in prompt

    @pytest.mark.asyncio
    async def test_previews_are_capped(self, oracle, config):
        await _planner(oracle, config).plan(make_document(40_000))
        prompt = oracle.calls("DOCUMENT SKELETON")[0]
        assert "DOCUMENT (14 sections, showing first 10)" in prompt
        assert "--- SECTION 11 ---" not in prompt

    @pytest.mark.asyncio
    async def test_unparsable_reply_gives_placeholder(self, config):
        oracle = FakeOracle(document_skeleton="I cannot do that.")
        skeleton = await _planner(oracle, config).plan(make_document(100))
        assert skeleton.main_thesis == UNKNOWN_THESIS
        assert skeleton.sections == []

    @pytest.mark.asyncio
    async def test_camel_case_and_sloppy_fields(self, config):
        reply = json.dumps({
            "mainThesis": "T",
            "sections": [
                {"index": 0, "title": None, "role": "evidence|argument", "keyPoints": "one"},
                "not a section",
            ],
            "keyArguments": ["a", None, 3],
        })
        skeleton = await _planner(FakeOracle(document_skeleton=reply), config).plan("some words")

        assert skeleton.main_thesis == "T"
        assert len(skeleton.sections) == 1
        assert skeleton.sections[0].role is SectionRole.EVIDENCE
        assert skeleton.sections[0].key_points == ["one"]
        assert skeleton.key_arguments == ["a", "3"]

    @pytest.mark.asyncio
    async def test_list_and_null_text_fields_are_flattened(self, config):
        reply = json.dumps({
            "main_thesis": ["Custom guides life", "", "Reason is a slave"],
            "overarching_theme": None,
            "narrative_arc": 7,
        })
        skeleton = await _planner(FakeOracle(document_skeleton=reply), config).plan("some words")

        assert skeleton.main_thesis == "Custom guides life; Reason is a slave"
        assert skeleton.overarching_theme == ""
        assert skeleton.narrative_arc == "7"

    @pytest.mark.asyncio
    async def test_ill_typed_reply_gives_placeholder(self, config):
        reply = json.dumps({"main_thesis": "T", "sections": [{"index": "opening"}]})
        skeleton = await _planner(FakeOracle(document_skeleton=reply), config).plan("some words")

        assert skeleton.main_thesis == UNKNOWN_THESIS
        assert skeleton.total_word_count == 2

    @pytest.mark.asyncio
    async def test_empty_document(self, oracle, config):
        with pytest.raises(EmptyDocumentError):
            await _planner(oracle, config).plan("   ")


class TestTwoTier:
    @pytest.mark.asyncio
    async def test_segments_planned_then_synthesised(self, small_config):
        oracle = FakeOracle(document_skeleton=_partial)
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))

        assert len(oracle.calls("DOCUMENT SKELETON")) == 3
        assert len(oracle.calls("SKELETON SYNTHESIS")) == 1
        assert skeleton.tier == "two-tier"
        assert skeleton.sections

    @pytest.mark.asyncio
    async def test_synthesis_failure_falls_back_to_concatenation(self, small_config):
        oracle = FakeOracle(document_skeleton=_partial, skeleton_synthesis="no json, sorry")
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))

        assert skeleton.narrative_arc == MULTI_PART_ARC
        assert skeleton.main_thesis == "thesis from word0"
        assert [s.index for s in skeleton.sections] == [0, 1, 2]
        assert [s.word_range for s in skeleton.sections] == [(0, 400), (400, 800), (800, 1000)]
        assert skeleton.central_concepts == ["shared", "word0", "word400", "word800"]

    @pytest.mark.asyncio
    async def test_fallback_sections_never_empty(self, small_config):
        empty_partial = json.dumps({"main_thesis": "t", "sections": []})
        oracle = FakeOracle(document_skeleton=empty_partial, skeleton_synthesis="garbage")
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))

        assert len(skeleton.sections) == 3
        assert skeleton.sections[0].title == "Part 1"

    @pytest.mark.asyncio
    async def test_synthesis_without_sections_reuses_partials(self, small_config):
        oracle = FakeOracle(
            document_skeleton=_partial,
            skeleton_synthesis=json.dumps({"main_thesis": "unified", "sections": []}),
        )
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))
        assert skeleton.main_thesis == "unified"
        assert len(skeleton.sections) == 3

    @pytest.mark.asyncio
    async def test_null_synthesis_thesis_keeps_partial_sections(self, small_config):
        oracle = FakeOracle(
            document_skeleton=_partial,
            skeleton_synthesis=json.dumps({"main_thesis": None, "sections": []}),
        )
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))

        assert skeleton.tier == "two-tier"
        assert skeleton.main_thesis == ""
        assert len(skeleton.sections) == 3

    @pytest.mark.asyncio
    async def test_ill_typed_synthesis_falls_back_to_concatenation(self, small_config):
        oracle = FakeOracle(
            document_skeleton=_partial,
            skeleton_synthesis=json.dumps({"main_thesis": "T", "sections": [{"index": "all"}]}),
        )
        skeleton = await _planner(oracle, small_config).plan(make_document(1000))

        assert skeleton.narrative_arc == MULTI_PART_ARC
        assert skeleton.main_thesis == "thesis from word0"

    @pytest.mark.asyncio
    async def test_fatal_segment_cancels_the_others(self, small_config):
        others_waiting = asyncio.Event()
        waiting, cancelled = [], []

        class QuotaOracle(FakeOracle):
            async def complete(self, prompt):
                self.prompts.append(prompt)
                first_word = _first_word(prompt)
                if first_word == "word0":
                    await others_waiting.wait()
                    raise FatalOracleError("quota exhausted")
                waiting.append(first_word)
                if len(waiting) == 2:
                    others_waiting.set()
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(first_word)
                    raise
                return _partial(prompt)

        oracle = QuotaOracle()
        with pytest.raises(FatalOracleError):
            await _planner(oracle, small_config).plan(make_document(1000))

        assert sorted(cancelled) == ["word400", "word800"]
        assert oracle.calls("SKELETON SYNTHESIS") == []


class TestReuse:
    @pytest.mark.asyncio
    async def test_only_final_skeleton_is_stored_and_reused(self, small_config):
        store = InMemoryRunStore()
        oracle = FakeOracle(document_skeleton=_partial)
        planner = _planner(oracle, small_config, store)

        first = await planner.get_or_create_skeleton("plan-1", make_document(1000))
        assert await store.read_skeleton("plan-1-part-0") is None

        calls_before = len(oracle.prompts)
        again = await planner.get_or_create_skeleton("plan-1", "different text entirely")
        assert len(oracle.prompts) == calls_before
        assert again == first


def test_section_for_falls_back_to_first():
    skeleton = DocumentSkeleton(sections=[{"index": 0, "title": "A"}, {"index": 1, "title": "B"}])
    assert skeleton.section_for(1).title == "B"
    assert skeleton.section_for(9).title == "A"
    assert DocumentSkeleton().section_for(0) is None
