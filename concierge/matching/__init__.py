"""
Industry-agnostic matching.

- facets: facet vocabulary discovered from the candidate pool
- constraints: facet constraints and staged relaxation
- gating: word-boundary hard-term gating
- expansion: morphology, spelling, translation, abbreviation and synonym
  expansion for empty gates
- type_lexicon: primary item-type anchoring over gated candidates
"""
from concierge.matching.facets import FacetVocabulary, discover_facet_vocabulary, normalize_option_name
from concierge.matching.constraints import (
    FacetConstraint,
    filter_with_relaxation,
    product_satisfies,
    relax_constraints,
)
from concierge.matching.gating import gate, gate_with_expansion, matches_hard_term

__all__ = [
    "FacetVocabulary",
    "discover_facet_vocabulary",
    "normalize_option_name",
    "FacetConstraint",
    "filter_with_relaxation",
    "product_satisfies",
    "relax_constraints",
    "gate",
    "gate_with_expansion",
    "matches_hard_term",
]
