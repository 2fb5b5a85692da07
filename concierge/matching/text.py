"""
Text normalization, tokenization and lexical scoring.

Industry-agnostic helpers shared by gating, slot scoring and the BM25
prefilter that trims oversized candidate pools before AI ranking.
"""
import html
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional

from concierge.catalog.models import CandidateProduct

STOPWORDS = frozenset([
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "from", "as", "is", "was", "are", "were", "been", "be", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "must", "can", "this", "that", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
    "what", "which", "who", "whom", "where", "when", "why", "how", "if", "then", "else",
    "about", "above", "after", "before", "below", "between", "during", "through", "under", "over",
    "up", "down", "out", "off", "away", "back", "here", "there",
    "some", "any", "all", "both", "each", "every", "few", "many", "most", "other", "such",
    "no", "not", "none", "nothing", "nobody", "nowhere", "never", "neither", "nor",
    "into", "onto", "within", "without",
])

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s\-/']")


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, drop punctuation except hyphen/slash/apostrophe, collapse whitespace."""
    if not text or not isinstance(text, str):
        return ""
    text = _PUNCT_RE.sub(" ", text.lower())
    return _WS_RE.sub(" ", text).strip()


def tokenize(text: Optional[str]) -> List[str]:
    """Split normalized text into tokens; drops 1-char tokens and stopwords."""
    normalized = normalize_text(text)
    if not normalized:
        return []
    return [t for t in normalized.split(" ") if len(t) >= 2 and t not in STOPWORDS]


def clean_description(raw: Optional[str]) -> str:
    """Strip HTML tags and decode entities from a product description."""
    if not raw or not isinstance(raw, str):
        return ""
    cleaned = html.unescape(_TAG_RE.sub(" ", raw))
    return _WS_RE.sub(" ", cleaned).strip()


def build_search_text(product: CandidateProduct, description_chars: int = 400) -> str:
    """
    Searchable text for gating: title, handle, type, tags, vendor and a
    truncated cleaned description, whitespace-collapsed and lowercased.
    """
    parts = [
        product.title,
        product.handle.replace("-", " ") if product.handle else "",
        product.product_type,
        " ".join(product.tags),
        product.vendor,
        clean_description(product.description)[:description_chars],
    ]
    joined = " ".join(p for p in parts if p)
    return _WS_RE.sub(" ", joined).strip().lower()


def build_index_text(product: CandidateProduct, description_chars: int = 1000) -> str:
    """Richer text for lexical retrieval: search text plus option names and values."""
    parts = [build_search_text(product, description_chars)]
    for name, values in product.option_values.items():
        parts.append(name)
        parts.append(" ".join(values))
    return " ".join(p for p in parts if p)


def calculate_idf(documents: List[List[str]]) -> Dict[str, float]:
    """IDF(t) = log(N / df(t)) over tokenized documents."""
    n_docs = len(documents)
    if n_docs == 0:
        return {}
    df: Counter = Counter()
    for tokens in documents:
        df.update(set(tokens))
    return {token: math.log(n_docs / freq) for token, freq in df.items() if freq > 0}


def bm25_score(
    query_tokens: Iterable[str],
    doc_tokens: List[str],
    idf: Dict[str, float],
    avg_doc_len: float,
    k1: float = 1.2,
    b: float = 0.75,
) -> float:
    """Okapi BM25 score of one document for a query."""
    if not doc_tokens or avg_doc_len <= 0:
        return 0.0
    freqs = Counter(doc_tokens)
    doc_len = len(doc_tokens)
    score = 0.0
    for token in query_tokens:
        freq = freqs.get(token, 0)
        idf_value = idf.get(token, 0.0)
        if freq == 0 or idf_value == 0:
            continue
        numerator = freq * (k1 + 1)
        denominator = freq + k1 * (1 - b + b * (doc_len / avg_doc_len))
        score += idf_value * (numerator / denominator)
    return score


def bm25_prefilter(
    candidates: List[CandidateProduct],
    query: str,
    limit: int,
) -> List[CandidateProduct]:
    """
    Keep the ``limit`` most query-relevant candidates.

    Stable: ties (including all-zero scores) keep their input order, so a
    query with no lexical signal degrades to simple truncation.
    """
    if len(candidates) <= limit:
        return list(candidates)
    docs = [tokenize(build_index_text(p)) for p in candidates]
    idf = calculate_idf(docs)
    avg_len = sum(len(d) for d in docs) / len(docs)
    query_tokens = tokenize(query)
    scored = [
        (bm25_score(query_tokens, doc, idf, avg_len), index)
        for index, doc in enumerate(docs)
    ]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [candidates[index] for _, index in scored[:limit]]
