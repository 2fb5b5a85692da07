"""
Shopper-facing cleanup of model reasoning text.
"""
import re
from typing import Iterable, List, Optional

_PREFIX_RE = re.compile(r"^(reasoning|explanation|selection|rationale|note|summary)\s*:\s*", re.IGNORECASE)
_BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
_ITALIC_RE = re.compile(r"\*(.*?)\*")
_CODE_RE = re.compile(r"`(.*?)`")
_LINK_RE = re.compile(r"\[(.*?)\]\(.*?\)")
_FIELD_RE = re.compile(r"\b(handle|score|label|itemIndex|productId|id)\s*:\s*[\w\-]+", re.IGNORECASE)
_JSON_RE = re.compile(r"\{[^}]*\}|\[[^\]]*\]")
_ROBOTIC_RE = re.compile(
    r"\b(based on|according to)\s+(the\s+)?(user|shopper|customer)(['’]s)?\s+"
    r"(intent|query|request|preferences|needs|requirements)\s*,?\s*",
    re.IGNORECASE,
)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_WS_RE = re.compile(r"\s+")

MIN_REASONING_LENGTH = 10
MAX_SENTENCES = 4
FALLBACK_REASONING = "These products are a good match for what you described."


def clean_reasoning(text: Optional[str], max_sentences: int = MAX_SENTENCES) -> str:
    """
    Strip markdown, handles/ids and JSON fragments from reasoning, collapse
    whitespace, and cap the number of sentences.

    Returns "" when too little readable text survives.
    """
    if not text or not text.strip():
        return ""
    cleaned = _PREFIX_RE.sub("", text.strip())
    cleaned = _LINK_RE.sub(r"\1", cleaned)
    cleaned = _BOLD_RE.sub(r"\1", cleaned)
    cleaned = _ITALIC_RE.sub(r"\1", cleaned)
    cleaned = _CODE_RE.sub(r"\1", cleaned)
    cleaned = _FIELD_RE.sub("", cleaned)
    cleaned = _JSON_RE.sub("", cleaned)
    cleaned = _ROBOTIC_RE.sub("", cleaned)

    cleaned = re.sub(r"!{2,}", "!", cleaned)
    cleaned = re.sub(r"\?{2,}", "?", cleaned)
    cleaned = re.sub(r"\.{4,}", "...", cleaned)
    cleaned = re.sub(r"\s+([,.!?])", r"\1", cleaned)
    cleaned = re.sub(r",\s*,", ",", cleaned)
    cleaned = _WS_RE.sub(" ", cleaned).strip(" ,-")

    if len(cleaned) < MIN_REASONING_LENGTH:
        return ""

    sentences = [s for s in _SENTENCE_RE.split(cleaned) if s]
    cleaned = " ".join(sentences[:max_sentences])
    cleaned = cleaned[0].upper() + cleaned[1:]
    if not re.search(r"[.!?]$", cleaned):
        cleaned += "."
    return cleaned


def combine_reasonings(reasonings: Iterable[Optional[str]]) -> str:
    """Merge several reasoning strings (e.g. one per bundle item) into one explanation."""
    unique: List[str] = []
    for reasoning in reasonings:
        cleaned = clean_reasoning(reasoning)
        if cleaned and cleaned not in unique:
            unique.append(cleaned)

    if not unique:
        return ""
    if len(unique) == 1:
        return unique[0]
    if len(unique) == 2:
        return f"{unique[0]} Additionally, {_lower_first(unique[1])}"
    if len(unique) == 3:
        return f"{unique[0]} {unique[1]} Finally, {_lower_first(unique[2])}"
    return f"{unique[0]} These products were selected to match your specific requirements and preferences."


def _lower_first(text: str) -> str:
    return text[:1].lower() + text[1:]
