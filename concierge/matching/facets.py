"""
Facet vocabulary discovery.

Catalogs are industry-agnostic: a clothing shop exposes size/color, a candle
shop exposes scent/size, a cosmetics shop exposes shade/finish. Instead of a
fixed taxonomy, the vocabulary is discovered per request from the candidate
pool's variant options and rebuilt whenever the pool changes.
"""
from dataclasses import dataclass, field
import re
from typing import Dict, Iterable, List, Optional, Set

from concierge.catalog.models import CandidateProduct

# Static option-name aliases applied after lowercase/trim
OPTION_NAME_ALIASES = {
    "colour": "color",
    "colours": "color",
    "sizing": "size",
    "sizes": "size",
}

# Keys accepted from cf-{key}-{value} tags even when no variant exposes them
GENERIC_TAG_KEYS = ("size", "color", "material", "scent", "finish", "capacity", "length")

_PERCENT_RE = re.compile(r"^\d+%?$")


def normalize_option_name(name: Optional[str]) -> str:
    """Lowercase/trim an option name and map known aliases."""
    if not name or not isinstance(name, str):
        return ""
    normalized = name.lower().strip()
    return OPTION_NAME_ALIASES.get(normalized, normalized)


@dataclass
class FacetMappingConfig:
    """Per-merchant facet mapping (e.g. {'shoe size': 'size'})."""
    preferred_option_name_aliases: Dict[str, str] = field(default_factory=dict)
    tag_prefixes_enabled: bool = True


def apply_facet_mapping(option_name: str, config: Optional[FacetMappingConfig] = None) -> str:
    """Normalize an option name, then apply the merchant's alias table."""
    normalized = normalize_option_name(option_name)
    if config and config.preferred_option_name_aliases:
        aliases = {normalize_option_name(k): v for k, v in config.preferred_option_name_aliases.items()}
        alias = aliases.get(normalized)
        if alias:
            normalized = normalize_option_name(alias)
    return normalized


@dataclass
class FacetVocabulary:
    """Option names and observed values for one candidate pool."""
    option_names: Set[str] = field(default_factory=set)
    option_name_to_values: Dict[str, Set[str]] = field(default_factory=dict)

    def add(self, name: str, value: Optional[str] = None) -> None:
        if not name:
            return
        self.option_names.add(name)
        values = self.option_name_to_values.setdefault(name, set())
        if value is not None:
            value = value.lower().strip()
            if value:
                values.add(value)

    def all_values(self) -> Set[str]:
        values: Set[str] = set()
        for option_values in self.option_name_to_values.values():
            values |= option_values
        return values


def discover_facet_vocabulary(
    candidates: Iterable[CandidateProduct],
    mapping: Optional[FacetMappingConfig] = None,
    include_tags: bool = False,
) -> FacetVocabulary:
    """
    Build the facet vocabulary for a candidate pool.

    Scans each variant's selected options and the product's flat option
    values. With ``include_tags``, cf-* facet tags contribute as well.
    """
    vocabulary = FacetVocabulary()
    for candidate in candidates:
        for variant in candidate.variants:
            for option in variant.selected_options:
                if option.name and option.value:
                    vocabulary.add(apply_facet_mapping(option.name, mapping), option.value)
        for option_name, values in candidate.option_values.items():
            name = apply_facet_mapping(option_name, mapping)
            if not name:
                continue
            vocabulary.add(name)
            for value in values or []:
                if isinstance(value, str):
                    vocabulary.add(name, value)

    if include_tags and (mapping is None or mapping.tag_prefixes_enabled):
        known = set(vocabulary.option_names)
        for candidate in candidates:
            for key, value in extract_tag_facets(candidate.tags, known):
                vocabulary.add(key, value)
    return vocabulary


def _split_material(value: str) -> List[str]:
    """'80-cotton-20-polyester' -> ['cotton', 'polyester']."""
    tokens = [t for t in value.split("-") if t and not _PERCENT_RE.match(t)]
    return tokens or [value]


def extract_tag_facets(tags: Iterable[str], discovered_option_names: Set[str]) -> List[tuple]:
    """
    Read facet (key, value) pairs from product tags.

    Recognizes ``cf-{key}-{value}`` for discovered or generic keys and
    ``{option}-{value}`` / ``{option}:{value}`` for discovered option names.
    Values are lowercased, trimmed and deduped in first-seen order.
    """
    pairs = []
    seen = set()

    def _add(key: str, value: str) -> None:
        value = value.lower().strip()
        if value and (key, value) not in seen:
            seen.add((key, value))
            pairs.append((key, value))

    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        lowered = tag.strip().lower()
        if lowered.startswith("cf-"):
            parts = lowered[3:].split("-", 1)
            if len(parts) == 2:
                key = normalize_option_name(parts[0])
                if key in discovered_option_names or key in GENERIC_TAG_KEYS:
                    if key == "material":
                        for token in _split_material(parts[1].strip()):
                            _add(key, token)
                    else:
                        _add(key, parts[1])
            continue
        for option_name in discovered_option_names:
            for prefix in (f"{option_name}-", f"{option_name}:"):
                if lowered.startswith(prefix):
                    _add(option_name, lowered[len(prefix):])
    return pairs
