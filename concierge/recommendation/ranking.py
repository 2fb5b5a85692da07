"""
Deterministic ranking.

Used whenever AI ranking is disabled, fails, or returns no usable handles.
Total by construction: for any candidate list it returns
``min(len(candidates), result_count)`` handles, all from the candidate set.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from concierge.catalog.models import CandidateProduct
from concierge.matching.constraints import value_matches
from concierge.matching.facets import normalize_option_name
from concierge.matching.gating import matches_hard_term
from concierge.matching.text import build_search_text

AVAILABLE_SCORE = 10
PREFERENCE_MATCH_SCORE = 6
MULTI_MATCH_BONUS = 2
MULTI_MATCH_THRESHOLD = 3

DETERMINISTIC_REASONING = (
    "Selected by availability and by how closely each product matches your preferences."
)

Preferences = Union[List[str], Dict[str, str], None]

SOURCE_AI = "ai"
SOURCE_CACHE = "cache"
SOURCE_DETERMINISTIC = "deterministic"


@dataclass
class RankingResult:
    ranked_handles: List[str] = field(default_factory=list)
    reasoning: str = ""
    source: str = SOURCE_DETERMINISTIC


def _option_map(product: CandidateProduct) -> Dict[str, List[str]]:
    options: Dict[str, List[str]] = {}
    for name, values in product.option_values.items():
        options.setdefault(normalize_option_name(name), []).extend(values)
    for variant in product.variants:
        for option in variant.selected_options:
            options.setdefault(normalize_option_name(option.name), []).append(option.value)
    return options


def count_preference_matches(product: CandidateProduct, preferences: Preferences) -> int:
    """
    Number of preferences the product satisfies.

    A mapping is matched option by option (name -> desired value); a list of
    free-text terms is matched against the product's searchable text and
    option values.
    """
    if not preferences:
        return 0
    options = _option_map(product)

    if isinstance(preferences, dict):
        matched = 0
        for name, desired in preferences.items():
            values = options.get(normalize_option_name(name), [])
            if desired and any(value_matches(v, str(desired)) for v in values):
                matched += 1
        return matched

    text = build_search_text(product)
    option_text = " ".join(v for values in options.values() for v in values)
    matched = 0
    for term in preferences:
        if term and (matches_hard_term(text, term) or matches_hard_term(option_text, term)):
            matched += 1
    return matched


def preference_score(product: CandidateProduct, preferences: Preferences) -> int:
    """+10 when available, +6 per matched preference, +2 bonus at three or more matches."""
    score = AVAILABLE_SCORE if product.available else 0
    matched = count_preference_matches(product, preferences)
    score += PREFERENCE_MATCH_SCORE * matched
    if matched >= MULTI_MATCH_THRESHOLD:
        score += MULTI_MATCH_BONUS
    return score


def deterministic_ranking(
    candidates: List[CandidateProduct],
    result_count: int,
    preferences: Preferences = None,
) -> RankingResult:
    """
    Rank by availability, then preference score (when preferences are
    given), then handle. Ties keep a stable lexical order.
    """
    limit = max(0, int(result_count))
    if preferences:
        scores = {id(p): preference_score(p, preferences) for p in candidates}
        ordered = sorted(candidates, key=lambda p: (not p.available, -scores[id(p)], p.handle))
    else:
        ordered = sorted(candidates, key=lambda p: (not p.available, p.handle))

    handles: List[str] = []
    seen = set()
    for product in ordered:
        if len(handles) >= limit:
            break
        if product.handle not in seen:
            seen.add(product.handle)
            handles.append(product.handle)
    return RankingResult(ranked_handles=handles, reasoning=DETERMINISTIC_REASONING, source=SOURCE_DETERMINISTIC)
