"""
Primary item-type anchoring.

A shopper asking for a "linen shirt" wants shirts; a "shirt dress" that
mentions shirt in its title should not crowd them out. The type lexicon is
built per request from the pool's product types (primary) and tags
(secondary). Hard terms are split into type terms and attribute terms, the
most specific type term becomes the anchor, and gated products are kept
only if their product type or a tag equals the anchor.

Anchoring only narrows: when no product carries the anchor (or a close
variant of it from the lexicon) the pool is returned unchanged.
"""
from dataclasses import dataclass, field
import re
from typing import List, Optional, Set, Tuple

from concierge.catalog.models import CandidateProduct
from concierge.matching.expansion import expand_morphology
from concierge.utils.logger import get_logger

logger = get_logger("matching.type_lexicon")

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")
_MAX_PHRASE_WORDS = 4

# Facet tags (cf-color-red) describe attributes, not item types
_FACET_TAG_PREFIX = "cf-"


def normalize_type_term(term: Optional[str]) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    if not term:
        return ""
    text = _NON_WORD_RE.sub("", term.lower())
    return _WS_RE.sub(" ", text).strip()


@dataclass
class TypeLexicon:
    """Item-type vocabulary of one candidate pool."""
    product_types: Set[str] = field(default_factory=set)
    tags: Set[str] = field(default_factory=set)

    def __contains__(self, term: str) -> bool:
        return term in self.product_types or term in self.tags

    def __len__(self) -> int:
        return len(self.product_types | self.tags)

    def entries(self) -> Set[str]:
        return self.product_types | self.tags

    def lookup(self, term: str) -> Optional[str]:
        """The lexicon entry for a term, allowing plural/singular forms."""
        if term in self:
            return term
        for variant in sorted(expand_morphology(term)):
            if variant in self:
                return variant
        return None


@dataclass
class TypeTermSplit:
    type_terms: List[str] = field(default_factory=list)
    attribute_terms: List[str] = field(default_factory=list)


def build_type_lexicon(products: List[CandidateProduct]) -> TypeLexicon:
    lexicon = TypeLexicon()
    for product in products:
        product_type = normalize_type_term(product.product_type)
        if product_type:
            lexicon.product_types.add(product_type)
        for tag in product.tags or []:
            if not isinstance(tag, str) or tag.strip().lower().startswith(_FACET_TAG_PREFIX):
                continue
            normalized = normalize_type_term(tag)
            if normalized:
                lexicon.tags.add(normalized)
    return lexicon


def split_type_terms(text: str, lexicon: TypeLexicon) -> TypeTermSplit:
    """
    Split shopper text into type terms (lexicon entries) and attribute terms.

    Longer phrases are matched first (up to four words), so "running shoes"
    wins over "shoes" when both are in the lexicon.
    """
    words = normalize_type_term(text).split()
    matched: Set[int] = set()
    type_terms: List[str] = []

    for length in range(min(_MAX_PHRASE_WORDS, len(words)), 0, -1):
        for start in range(len(words) - length + 1):
            span = range(start, start + length)
            if any(i in matched for i in span):
                continue
            entry = lexicon.lookup(" ".join(words[start:start + length]))
            if entry is None:
                continue
            if entry not in type_terms:
                type_terms.append(entry)
            matched.update(span)

    attribute_terms: List[str] = []
    for i, word in enumerate(words):
        if i not in matched and word not in attribute_terms:
            attribute_terms.append(word)
    return TypeTermSplit(type_terms=type_terms, attribute_terms=attribute_terms)


def select_primary_type_anchor(type_terms: List[str], lexicon: TypeLexicon) -> Optional[str]:
    """Product types beat tags, then longer (more specific) terms, then alphabetical."""
    if not type_terms:
        return None
    return sorted(type_terms, key=lambda t: (t not in lexicon.product_types, -len(t), t))[0]


def product_matches_type_anchor(product: CandidateProduct, anchor: str) -> bool:
    normalized = normalize_type_term(anchor)
    if not normalized:
        return False
    if normalize_type_term(product.product_type) == normalized:
        return True
    return any(normalize_type_term(tag) == normalized for tag in product.tags or [] if isinstance(tag, str))


def type_anchor_variants(anchor: str, lexicon: TypeLexicon) -> List[str]:
    """
    The anchor plus its family in the lexicon: plural/singular forms and
    entries sharing at least half their words with it (words over 3 chars).
    """
    variants = [anchor]
    for form in sorted(expand_morphology(anchor)):
        if form != anchor and form in lexicon:
            variants.append(form)

    anchor_words = anchor.split()
    for entry in sorted(lexicon.entries()):
        if entry in variants:
            continue
        entry_words = entry.split()
        shared = [
            w for w in anchor_words
            if len(w) > 3 and any(e == w or w in e or e in w for e in entry_words)
        ]
        if shared and len(shared) / max(len(anchor_words), len(entry_words)) >= 0.5:
            variants.append(entry)
    return variants


def anchor_to_type(
    candidates: List[CandidateProduct],
    hard_terms: List[str],
    lexicon: TypeLexicon,
) -> Tuple[List[CandidateProduct], Optional[str]]:
    """
    Keep candidates carrying the primary type anchor of the hard terms.

    Falls back to the anchor's lexicon family, and to the unchanged pool when
    neither matches. Returns (candidates, anchor actually applied or None).
    """
    terms = [t for t in hard_terms if t and t.strip()]
    if not terms or not candidates or not len(lexicon):
        return list(candidates), None

    split = split_type_terms(" ".join(terms), lexicon)
    anchor = select_primary_type_anchor(split.type_terms, lexicon)
    if anchor is None:
        return list(candidates), None

    anchored = [p for p in candidates if product_matches_type_anchor(p, anchor)]
    if not anchored:
        family = type_anchor_variants(anchor, lexicon)
        anchored = [p for p in candidates if any(product_matches_type_anchor(p, v) for v in family)]
        if anchored:
            logger.info(f"Type anchor '{anchor}' widened to {family}")

    if not anchored:
        logger.info(f"Type anchor '{anchor}' matched nothing; pool kept")
        return list(candidates), None

    logger.info(
        f"Type anchor '{anchor}' (attributes {split.attribute_terms}): "
        f"{len(anchored)}/{len(candidates)} candidates"
    )
    return anchored, anchor
