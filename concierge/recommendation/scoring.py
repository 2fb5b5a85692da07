"""
Token-overlap relevance of a product to a bundle slot.
"""
import re
from typing import Iterable, List, Union

from concierge.catalog.models import CandidateProduct
from concierge.matching.text import build_search_text

SLOT_STOPWORDS = frozenset(["the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"])

PHRASE_BOOST = 0.3

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", _NON_WORD_RE.sub(" ", (text or "").lower())).strip()


def _tokens(text: str) -> List[str]:
    return [t for t in _normalize(text).split(" ") if t and t not in SLOT_STOPWORDS]


def score_product_for_slot(
    product: CandidateProduct,
    slot: Union[str, Iterable[str]],
    description_chars: int = 400,
) -> float:
    """
    Score in [0, 1]: fraction of slot tokens present in the product text,
    plus 0.3 (capped at 1.0) when the whole slot phrase appears verbatim.

    Args:
        product: Candidate product
        slot: Slot descriptor, either a phrase or a list of hard terms
        description_chars: Description prefix included in the product text
    """
    phrase = slot if isinstance(slot, str) else " ".join(slot)
    slot_tokens = set(_tokens(phrase))
    if not slot_tokens:
        return 0.0

    product_text = build_search_text(product, description_chars)
    product_tokens = set(_tokens(product_text))
    score = len(slot_tokens & product_tokens) / len(slot_tokens)

    normalized_slot = _normalize(phrase)
    if normalized_slot and normalized_slot in _normalize(product_text):
        return min(1.0, score + PHRASE_BOOST)
    return score
