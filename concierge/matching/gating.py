"""
Hard-term gating over a product's searchable text.

Two or more hard terms are ANDed (every term must match); a single term is
matched on its own. Matching is word-boundary based so "suit" never hits
"suitable". An empty gate is a valid "no match" outcome, not an error.
"""
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from concierge.catalog.models import CandidateProduct
from concierge.matching.expansion import expand_terms
from concierge.matching.facets import FacetVocabulary
from concierge.matching.text import build_search_text, normalize_text
from concierge.utils.logger import get_logger

logger = get_logger("matching.gating")

# Words whose presence marks a boundary match of the key as a false positive
DENYLIST: Dict[str, List[str]] = {
    "suit": ["suitcase", "suitable", "suited", "suiting"],
}


def _term_pattern(term: str) -> Optional[re.Pattern]:
    normalized = normalize_text(term)
    if not normalized:
        return None
    escaped = re.escape(normalized)
    if " " in normalized:
        # re.escape leaves spaces alone; allow flexible whitespace between words
        escaped = r"\s+".join(re.escape(w) for w in normalized.split(" "))
    return re.compile(rf"\b{escaped}\b", re.IGNORECASE)


def matches_hard_term(search_text: str, term: str) -> bool:
    """Word-boundary match of one hard term (or phrase) against search text."""
    pattern = _term_pattern(term)
    if pattern is None:
        return False
    text = normalize_text(search_text)
    if not pattern.search(text):
        return False

    for denied in DENYLIST.get(normalize_text(term), []):
        if re.search(rf"\b{re.escape(denied)}\b", text, re.IGNORECASE):
            return False
    return True


def text_passes_gate(search_text: str, hard_terms: List[str]) -> bool:
    """AND over terms when there are two or more, otherwise a single match."""
    terms = [t for t in hard_terms if t and t.strip()]
    if not terms:
        return True
    if len(terms) >= 2:
        return all(matches_hard_term(search_text, t) for t in terms)
    return any(matches_hard_term(search_text, t) for t in terms)


def gate(
    candidates: List[CandidateProduct],
    hard_terms: List[str],
    description_chars: int = 400,
) -> List[CandidateProduct]:
    """Filter candidates by hard terms. No terms keeps every candidate."""
    terms = [t for t in hard_terms if t and t.strip()]
    if not terms:
        return list(candidates)
    gated = [
        p for p in candidates
        if text_passes_gate(build_search_text(p, description_chars), terms)
    ]
    mode = "AND" if len(terms) >= 2 else "OR"
    logger.info(f"Gate ({mode}) {terms}: {len(gated)}/{len(candidates)} candidates")
    return gated


def gate_with_expansion(
    candidates: List[CandidateProduct],
    hard_terms: List[str],
    description_chars: int = 400,
) -> Tuple[List[CandidateProduct], bool]:
    """
    Strict gate first; if it is empty, retry with each term expanded.

    A term is satisfied by any of its expansions, so AND semantics across
    terms are kept. Returns (gated candidates, whether expansion was used).
    """
    gated = gate(candidates, hard_terms, description_chars)
    terms = [t for t in hard_terms if t and t.strip()]
    if gated or not terms:
        return gated, False

    expansions = expand_terms(terms)
    require_all = len(terms) >= 2

    def _term_hit(text: str, term: str) -> bool:
        return any(matches_hard_term(text, variant) for variant in expansions.get(term, {term}))

    expanded = []
    for product in candidates:
        text = build_search_text(product, description_chars)
        hits = (_term_hit(text, t) for t in terms)
        if (all(hits) if require_all else any(hits)):
            expanded.append(product)
    logger.info(f"Expanded gate {terms}: {len(expanded)}/{len(candidates)} candidates")
    return expanded, True


def non_facet_hard_terms(hard_terms: Iterable[str], vocabulary: FacetVocabulary) -> List[str]:
    """Drop hard terms that are facet values (handled as constraints instead)."""
    facet_values: Set[str] = vocabulary.all_values()
    return [t for t in hard_terms if t and t.lower().strip() not in facet_values]


def exclude_avoided(
    candidates: List[CandidateProduct],
    avoid_terms: List[str],
    description_chars: int = 400,
) -> List[CandidateProduct]:
    """Remove candidates whose searchable text matches any avoid term."""
    terms = [t for t in avoid_terms if t and t.strip()]
    if not terms:
        return list(candidates)
    kept = [
        p for p in candidates
        if not any(matches_hard_term(build_search_text(p, description_chars), t) for t in terms)
    ]
    if len(kept) != len(candidates):
        logger.info(f"Avoid terms {terms} removed {len(candidates) - len(kept)} candidates")
    return kept
