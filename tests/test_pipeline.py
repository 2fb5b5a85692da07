"""
End-to-end pipeline runs with a mocked intent model and deterministic ranking.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.core.config import ConciergeConfig
from concierge.core.pipeline import (
    SOURCE_BUNDLE,
    SOURCE_NONE,
    ConciergePipeline,
    facet_terms_to_constraints,
    intent_text,
)
from concierge.matching.facets import discover_facet_vocabulary
from concierge.parsing.intent_parser import BundleItem, HardFacets, ParsedIntent
from concierge.recommendation.ai_ranking import AIRanker
from concierge.recommendation.ranking import SOURCE_DETERMINISTIC, RankingResult
from concierge.recommendation.reasoning import FALLBACK_REASONING

from conftest import make_product


@pytest.fixture
def catalog():
    return [
        make_product("blue-shirt", title="Blue Oxford Shirt", vendor="Acme", variants=[({"Color": "Blue"}, True)]),
        make_product("white-shirt", title="White Poplin Shirt", vendor="Beta", variants=[({"Color": "White"}, True)]),
        make_product("blue-pants", title="Blue Chino Pants", vendor="Cato", variants=[({"Color": "Blue"}, True)]),
    ]


def _pipeline(intent=None, error=None, **overrides):
    client = MagicMock()
    if error is not None:
        client.beta.chat.completions.parse = AsyncMock(side_effect=error)
    else:
        message = SimpleNamespace(parsed=intent, content=None)
        client.beta.chat.completions.parse = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
        )
    settings = {"ai_ranking_enabled": False, "min_results_before_relax": 1}
    settings.update(overrides)
    config = ConciergeConfig(**settings)
    ranker = AIRanker(cache=MagicMock(), config=config)
    return ConciergePipeline(config=config, intent_client=client, ranker=ranker)


class TestHelpers:
    def test_intent_text_joins_shopper_messages(self):
        history = [
            {"role": "user", "content": "I need a coat"},
            {"role": "assistant", "content": "What color?"},
        ]
        assert intent_text("navy", history) == "I need a coat navy"
        assert intent_text("navy") == "navy"

    def test_facet_valued_terms(self, catalog):
        vocabulary = discover_facet_vocabulary(catalog)
        constraints = facet_terms_to_constraints(["Blue", "shirt"], vocabulary)
        assert [(c.key, c.value) for c in constraints] == [("color", "blue")]


class TestPipeline:
    def test_facet_term_becomes_constraint(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=["blue", "shirt"]))

        result = asyncio.run(pipeline.run("shop-a", "blue shirt", catalog, 8))

        assert result.handles == ["blue-shirt"]
        assert result.intent_used is True
        assert result.source == SOURCE_DETERMINISTIC
        assert result.relaxation["all_criteria_met"] is True
        assert result.relaxation["met_constraints"] == [{"key": "color", "value": "blue"}]
        assert result.relaxation["expansion_used"] is False

    def test_relaxation_is_explained(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=["shirt"], hard_facets=HardFacets(color="red")))

        result = asyncio.run(pipeline.run("shop-a", "red shirt", catalog, 8))

        assert result.handles == ["blue-shirt", "white-shirt"]
        assert result.relaxation["stage"] == 1
        assert result.relaxation["relaxed_constraints"] == [{"key": "color", "value": "red"}]
        assert result.reasoning.endswith("We relaxed your color preference to find more options.")

    def test_small_pool_that_fully_matches_is_not_relaxed(self):
        shirts = [
            make_product("oxford", title="Blue Oxford Shirt", variants=[({"Color": "Blue"}, True)]),
            make_product("poplin", title="Blue Poplin Shirt", variants=[({"Color": "Blue"}, True)]),
        ]
        pipeline = _pipeline(
            ParsedIntent(hard_terms=["shirt"], hard_facets=HardFacets(color="blue")),
            min_results_before_relax=None,
        )

        result = asyncio.run(pipeline.run("shop-a", "blue shirt", shirts, 8))

        assert sorted(result.handles) == ["oxford", "poplin"]
        assert result.relaxation["all_criteria_met"] is True
        assert result.relaxation["stage"] == 0
        assert result.relaxation["relaxed_constraints"] == []
        assert "relaxed" not in result.reasoning

    def test_intent_failure_ranks_whole_pool(self, catalog):
        pipeline = _pipeline(error=RuntimeError("model down"))

        result = asyncio.run(pipeline.run("shop-a", "something nice", catalog, 8))

        assert result.intent_used is False
        assert result.handles == ["blue-pants", "blue-shirt", "white-shirt"]
        assert result.relaxation == {}

    def test_avoid_terms(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=["shirt"], avoid_terms=["white"]))
        result = asyncio.run(pipeline.run("shop-a", "shirt, nothing white", catalog, 8))
        assert result.handles == ["blue-shirt"]

    def test_bundle(self, catalog):
        intent = ParsedIntent(
            is_bundle=True,
            bundle_items=[BundleItem(hard_terms=["shirt"]), BundleItem(hard_terms=["pants"])],
        )
        pipeline = _pipeline(intent)

        result = asyncio.run(pipeline.run("shop-a", "shirt and pants", catalog, 8))

        assert result.source == SOURCE_BUNDLE
        assert result.handles == ["blue-shirt", "blue-pants", "white-shirt"]
        assert "shirt, pants" in result.reasoning

    def test_nothing_matches(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=["kayak"]))

        result = asyncio.run(pipeline.run("shop-a", "kayak", catalog, 8))

        assert result.handles == []
        assert result.source == SOURCE_NONE
        assert result.reasoning == ""
        assert result.suggestions[0].startswith("Try adjusting your filters")

    def test_result_count_respected(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=[]))
        result = asyncio.run(pipeline.run("shop-a", "anything", catalog, 2))
        assert len(result.handles) == 2

    def test_unreadable_model_reasoning_is_replaced(self, catalog):
        pipeline = _pipeline(ParsedIntent(hard_terms=["shirt"]))
        pipeline.ranker = MagicMock()
        pipeline.ranker.rank = AsyncMock(return_value=RankingResult(
            ["blue-shirt"], '**ok** {"handle": "blue-shirt"}', "ai"
        ))

        result = asyncio.run(pipeline.run("shop-a", "shirt", catalog, 8))

        assert result.handles == ["blue-shirt"]
        assert result.reasoning == FALLBACK_REASONING

    def test_type_anchor_keeps_the_requested_item_type(self):
        products = [
            make_product("oxford", title="Oxford Shirt", product_type="Shirt"),
            make_product("shirt-dress", title="Denim Shirt Dress", product_type="Dress"),
        ]
        pipeline = _pipeline(ParsedIntent(hard_terms=["shirt"]))

        result = asyncio.run(pipeline.run("shop-a", "shirt", products, 8))

        assert result.handles == ["oxford"]
        assert result.relaxation["type_anchor"] == "shirt"

    def test_type_anchor_can_be_disabled(self):
        products = [
            make_product("oxford", title="Oxford Shirt", product_type="Shirt"),
            make_product("shirt-dress", title="Denim Shirt Dress", product_type="Dress"),
        ]
        pipeline = _pipeline(ParsedIntent(hard_terms=["shirt"]), enable_type_anchor=False)

        result = asyncio.run(pipeline.run("shop-a", "shirt", products, 8))

        assert sorted(result.handles) == ["oxford", "shirt-dress"]
        assert result.relaxation["type_anchor"] is None
