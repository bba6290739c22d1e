"""Tests for entity deduplication and ranking."""

import json

import pytest

from coherent_engine.agents.gateway import OracleGateway
from coherent_engine.config import EntityKind
from coherent_engine.executors.dedup import (
    deduplicate_entities,
    rank_candidates,
    refine_ranking,
    select_ranked,
)
from coherent_engine.models.base import ExtractedEntity
from conftest import FakeOracle


def _entity(text, chunk_index=0, importance=None):
    return ExtractedEntity(
        kind=EntityKind.CLAIM, text=text, chunk_index=chunk_index, importance=importance,
    )


class TestDeduplicate:
    def test_longer_containing_sentence_survives(self):
        entities = [
            _entity("The cat sat"),
            _entity("The cat sat on the mat."),
            _entity("Unrelated sentence."),
        ]
        result = deduplicate_entities(entities)

        assert len(result) == 2
        assert [e.text for e in result] == ["The cat sat on the mat.", "Unrelated sentence."]

    def test_longer_survives_regardless_of_order(self):
        result = deduplicate_entities([
            _entity("The cat sat on the mat."),
            _entity("the  CAT sat"),
        ])
        assert [e.text for e in result] == ["The cat sat on the mat."]

    def test_equal_normalised_forms_keep_first(self):
        result = deduplicate_entities([
            _entity("Freedom is necessity.", chunk_index=2),
            _entity("freedom   is NECESSITY.", chunk_index=0),
        ])
        assert len(result) == 1
        assert result[0].chunk_index == 2

    def test_truncated_fragment_is_swallowed(self):
        result = deduplicate_entities([_entity("he cat sat"), _entity("The cat sat on the mat")])
        assert [e.text for e in result] == ["The cat sat on the mat"]

    def test_containment_is_plain_substring(self):
        result = deduplicate_entities([_entity("concatenate strings"), _entity("cat")])
        assert [e.text for e in result] == ["concatenate strings"]

    def test_punctuation_is_significant(self):
        result = deduplicate_entities([_entity("U.S."), _entity("Let us go now")])
        assert [e.text for e in result] == ["U.S.", "Let us go now"]

    def test_order_by_chunk_then_importance(self):
        result = deduplicate_entities([
            _entity("late claim", chunk_index=3, importance=0.9),
            _entity("minor early claim", chunk_index=0, importance=0.2),
            _entity("major early claim", chunk_index=0, importance=0.8),
            _entity("unscored early claim", chunk_index=0),
        ])
        assert [e.text for e in result] == [
            "major early claim", "minor early claim", "unscored early claim", "late claim",
        ]

    def test_blank_payloads_dropped(self):
        result = deduplicate_entities([_entity("..."), _entity("   "), _entity("\n\t")])
        assert [e.text for e in result] == ["..."]


class TestSelectRanked:
    def test_skips_invalid_and_repeated_indices(self):
        candidates = [_entity(f"c{i}") for i in range(5)]
        picked = select_ranked(candidates, [3, "2", 0, 9, 3, 1.5, True, 1], top_n=10)
        assert [e.text for e in picked] == ["c2", "c0"]

    def test_caps_at_top_n(self):
        candidates = [_entity(f"c{i}") for i in range(5)]
        assert len(select_ranked(candidates, [1, 2, 3, 4, 5], top_n=2)) == 2


def test_rank_candidates_by_importance():
    entities = [_entity("a", importance=0.1), _entity("b", importance=0.9), _entity("c")]
    assert [e.text for e in rank_candidates(entities, 2)] == ["b", "a"]


class TestRefineRanking:
    @pytest.mark.asyncio
    async def test_small_pools_skip_the_oracle(self, config):
        oracle = FakeOracle()
        entities = [_entity(f"claim {i}") for i in range(10)]
        result = await refine_ranking(OracleGateway.from_config(oracle, config), entities, "T", config=config)

        assert result == entities
        assert oracle.prompts == []

    @pytest.mark.asyncio
    async def test_oracle_order_then_document_order(self, config):
        oracle = FakeOracle(rank_entities=json.dumps([12, 2, 5]))
        entities = [_entity(f"claim {i}", chunk_index=i) for i in range(12)]
        result = await refine_ranking(OracleGateway.from_config(oracle, config), entities, "T", config=config)

        assert [e.text for e in result] == ["claim 1", "claim 4", "claim 11"]
        assert "Return the top 15 items" in oracle.prompts[0]

    @pytest.mark.asyncio
    async def test_pool_is_truncated(self, config):
        oracle = FakeOracle(rank_entities="[1]")
        entities = [_entity(f"claim {i}", importance=i / 100) for i in range(80)]
        await refine_ranking(OracleGateway.from_config(oracle, config), entities, "T", config=config)

        prompt = oracle.prompts[0]
        assert "50. claim" in prompt
        assert "51. claim" not in prompt
        assert "1. claim 79 " in prompt

    @pytest.mark.asyncio
    async def test_unusable_reply_keeps_top_n(self, config):
        oracle = FakeOracle(rank_entities="I would rather not.")
        entities = [_entity(f"claim {i}", chunk_index=i) for i in range(40)]
        result = await refine_ranking(
            OracleGateway.from_config(oracle, config), entities, "T", show_minor=True, config=config,
        )
        assert len(result) == 30
