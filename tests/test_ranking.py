"""
Deterministic ranking, slot scoring, reasoning cleanup and result diversity.
"""

import pytest

from concierge.recommendation.diversity import (
    default_caps,
    ensure_result_diversity,
    generate_empty_result_suggestions,
    measure_result_diversity,
    price_bucket,
)
from concierge.recommendation.ranking import (
    SOURCE_DETERMINISTIC,
    count_preference_matches,
    deterministic_ranking,
    preference_score,
)
from concierge.recommendation.reasoning import clean_reasoning, combine_reasonings
from concierge.recommendation.scoring import score_product_for_slot

from conftest import make_product


# ============================================================================
# Slot scoring
# ============================================================================

class TestSlotScoring:
    def setup_method(self):
        self.suit = make_product("navy-wool-suit", title="Navy Wool Suit")

    def test_full_overlap_with_phrase_is_capped(self):
        assert score_product_for_slot(self.suit, "wool suit") == 1.0
        assert score_product_for_slot(self.suit, ["wool", "suit"]) == 1.0

    def test_partial_overlap(self):
        assert score_product_for_slot(self.suit, "linen suit") == 0.5

    def test_stopword_only_slot(self):
        assert score_product_for_slot(self.suit, "the") == 0.0

    def test_phrase_boost(self):
        product = make_product("jacket", title="Denim Jacket")
        # "jack" is not a token of the product, but the phrase appears verbatim
        assert score_product_for_slot(product, "denim jack") == pytest.approx(0.8)
        assert score_product_for_slot(product, "jack denim") == 0.5


# ============================================================================
# Deterministic ranking
# ============================================================================

class TestDeterministicRanking:
    def test_available_first_then_handle(self):
        products = [
            make_product("a-coat", available=False),
            make_product("c-coat"),
            make_product("b-coat"),
        ]
        result = deterministic_ranking(products, 3)
        assert result.ranked_handles == ["b-coat", "c-coat", "a-coat"]
        assert result.source == SOURCE_DETERMINISTIC
        assert result.reasoning

    def test_option_preferences(self):
        products = [
            make_product("a", variants=[({"Color": "Red"}, True)]),
            make_product("b", variants=[({"Color": "Blue", "Size": "M"}, True)]),
            make_product("c", available=False, variants=[({"Color": "Blue"}, True)]),
        ]
        result = deterministic_ranking(products, 8, preferences={"color": "blue"})
        assert result.ranked_handles == ["b", "a", "c"]

    def test_text_preferences(self):
        products = [
            make_product("plain-tee", title="Plain Organic Tee"),
            make_product("graphic-tee", title="Graphic Tee"),
        ]
        assert count_preference_matches(products[0], ["plain", "organic"]) == 2
        result = deterministic_ranking(products, 2, preferences=["plain", "organic"])
        assert result.ranked_handles == ["plain-tee", "graphic-tee"]

    def test_multi_match_bonus(self):
        product = make_product("tee", title="Plain Organic Cotton Tee")
        assert preference_score(product, ["plain", "organic", "cotton"]) == 10 + 18 + 2
        assert preference_score(product, ["plain"]) == 16

    def test_total_and_bounded(self):
        products = [make_product(f"p{i}") for i in range(5)]
        assert len(deterministic_ranking(products, 3).ranked_handles) == 3
        assert len(deterministic_ranking(products, 10).ranked_handles) == 5
        assert deterministic_ranking([], 8).ranked_handles == []

    def test_duplicate_handles_collapse(self):
        products = [make_product("dup"), make_product("dup"), make_product("other")]
        assert deterministic_ranking(products, 8).ranked_handles == ["dup", "other"]


# ============================================================================
# Reasoning cleanup
# ============================================================================

class TestReasoning:
    def test_markdown_prefix_and_fields_removed(self):
        raw = "Reasoning: These **wool** coats match handle: navy-coat-1 your request"
        assert clean_reasoning(raw) == "These wool coats match your request."

    def test_robotic_phrasing_removed(self):
        assert clean_reasoning("Based on the user intent, these coats are warm.") == "These coats are warm."

    def test_links_and_json(self):
        raw = 'Try the [Alpine Parka](https://shop/parka) {"score": 9} for deep winter!!'
        assert clean_reasoning(raw) == "Try the Alpine Parka for deep winter!"

    def test_too_short(self):
        assert clean_reasoning("ok") == ""
        assert clean_reasoning("   ") == ""
        assert clean_reasoning(None) == ""

    def test_sentence_cap(self):
        raw = "A first point. A second point. A third point."
        assert clean_reasoning(raw, max_sentences=2) == "A first point. A second point."

    def test_combine(self):
        assert combine_reasonings([]) == ""
        assert combine_reasonings(["Warm coats for winter.", "Warm coats for winter."]) == "Warm coats for winter."
        assert combine_reasonings(["Warm coats for winter.", "Scarves add color."]) == (
            "Warm coats for winter. Additionally, scarves add color."
        )
        assert combine_reasonings(["First reason here.", "Second reason here.", "Third reason here."]) == (
            "First reason here. Second reason here. Finally, third reason here."
        )
        many = combine_reasonings([f"Reason number {i} here." for i in range(4)])
        assert many.startswith("Reason number 0 here. These products were selected")


# ============================================================================
# Diversity
# ============================================================================

class TestDiversity:
    def setup_method(self):
        self.products = [
            make_product(f"a{i}", vendor="Acme", product_type="Coat", price=120) for i in range(1, 5)
        ] + [
            make_product("b1", vendor="Beta", product_type="Hat", price=30),
            make_product("c1", vendor="Cato", product_type="Scarf", price=250),
        ]
        self.ranked = ["a1", "a2", "a3", "a4", "b1", "c1"]

    def test_caps_by_result_size(self):
        assert default_caps(8) == (2, 3)
        assert default_caps(12) == (4, 6)
        assert default_caps(16) == (6, 8)

    def test_vendor_cap_reorders(self):
        assert ensure_result_diversity(self.ranked, self.products, 4) == ["a1", "a2", "b1", "c1"]

    def test_backfill_keeps_every_handle_when_room(self):
        result = ensure_result_diversity(self.ranked, self.products, 6)
        assert result == ["a1", "a2", "b1", "c1", "a3", "a4"]

    def test_explicit_caps(self):
        result = ensure_result_diversity(self.ranked, self.products, 3, max_per_vendor=1)
        assert result == ["a1", "b1", "c1"]

    def test_empty_inputs(self):
        assert ensure_result_diversity([], self.products, 4) == []
        assert ensure_result_diversity(["a1", "a1"], [], 4) == ["a1"]

    def test_measure(self):
        scores = measure_result_diversity(["a1", "b1", "c1"], self.products)
        assert scores["vendor_diversity"] == 1.0
        assert scores["overall_score"] == 1.0
        assert measure_result_diversity([], self.products)["overall_score"] == 0.0

    def test_price_bucket(self):
        assert price_bucket(None) == "unknown"
        assert price_bucket(49.99) == "low"
        assert price_bucket(50) == "medium"
        assert price_bucket(200) == "high"


class TestSuggestions:
    def test_empty_catalog(self):
        assert generate_empty_result_suggestions("coat", 0, 0) == [
            "No products are currently available. Please check back later."
        ]

    def test_filters_and_budget_hints(self):
        suggestions = generate_empty_result_suggestions("red dress under 50", 0, 40)
        assert len(suggestions) == 3
        assert "price range" in suggestions[-1]

    def test_generic(self):
        suggestions = generate_empty_result_suggestions("lamp", 3, 40)
        assert suggestions == [
            "Try adjusting your search criteria or filters.",
            "Browse similar products or explore different categories.",
        ]
