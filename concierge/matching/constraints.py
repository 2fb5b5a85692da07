"""
Facet constraint engine with staged relaxation.

Constraints are generic ``{key, value, scope}`` triples matched against a
variant's selected options. When too few products satisfy them, constraints
are relaxed in two stages so the shopper still gets results:

- Stage 1 drops exactly one constraint: a size constraint when the shop has
  no size option at all, otherwise material, then color, then the first
  remaining constraint.
- Stage 2 drops every remaining constraint.
"""
from dataclasses import dataclass, field, replace
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from concierge.catalog.models import CandidateProduct, Variant
from concierge.matching.facets import FacetVocabulary, normalize_option_name
from concierge.utils.logger import get_logger

logger = get_logger("matching.constraints")

SCOPE_GLOBAL = "global"
SCOPE_ITEM = "item"

SIZE_EQUIVALENCES = {
    "s": ["small", "s"],
    "m": ["medium", "m"],
    "l": ["large", "l"],
    "xl": ["extra large", "x-large", "xl", "extra-large"],
    "xxl": ["extra extra large", "xx-large", "xxl", "extra-extra-large"],
}

# Stage-1 relaxation preference once size is known to exist in the shop
STAGE1_PRIORITY = ("material", "color")


@dataclass(frozen=True)
class FacetConstraint:
    """A required option value, e.g. FacetConstraint('size', 'l')."""
    key: str
    value: str
    scope: str = SCOPE_GLOBAL

    def __post_init__(self):
        object.__setattr__(self, "key", normalize_option_name(self.key))
        object.__setattr__(self, "value", (self.value or "").strip())


@dataclass
class RelaxationStep:
    """Outcome of one relax_constraints call."""
    constraints: List[FacetConstraint]
    removed: List[FacetConstraint] = field(default_factory=list)
    reason: str = ""


def value_matches(product_value: str, constraint_value: str) -> bool:
    """
    Conservative value equivalence.

    Order: exact match, then the size abbreviation table in both directions,
    then substring containment either way.
    """
    product = (product_value or "").lower().strip()
    constraint = (constraint_value or "").lower().strip()
    if not product or not constraint:
        return False
    if product == constraint:
        return True

    if constraint in SIZE_EQUIVALENCES and product in SIZE_EQUIVALENCES[constraint]:
        return True
    if product in SIZE_EQUIVALENCES and constraint in SIZE_EQUIVALENCES[product]:
        return True

    return constraint in product or product in constraint


def variant_satisfies(variant: Variant, constraints: Iterable[FacetConstraint]) -> bool:
    """True when every constraint key exists on the variant with a matching value."""
    constraints = list(constraints)
    if not constraints:
        return True
    if not variant.selected_options:
        return False

    options: Dict[str, str] = {}
    for option in variant.selected_options:
        if option.name and option.value:
            options[normalize_option_name(option.name)] = option.value

    for constraint in constraints:
        value = options.get(normalize_option_name(constraint.key))
        if not value:
            return False
        if not value_matches(value, constraint.value):
            return False
    return True


def product_satisfies(
    product: CandidateProduct,
    constraints: List[FacetConstraint],
    require_available: bool = True,
) -> bool:
    """
    True when at least one (optionally available) variant satisfies all
    constraints. With no constraints only availability is checked.
    """
    if not constraints:
        return not require_available or product.available
    if not product.variants:
        return False
    for variant in product.variants:
        if require_available and not variant.available_for_sale:
            continue
        if variant_satisfies(variant, constraints):
            return True
    return False


def merge_constraints(
    global_constraints: List[FacetConstraint],
    item_constraints: List[FacetConstraint],
) -> List[FacetConstraint]:
    """Item constraints override global ones on the same key; union otherwise."""
    merged: Dict[str, FacetConstraint] = {}
    for constraint in global_constraints:
        merged[constraint.key] = replace(constraint, scope=SCOPE_GLOBAL)
    for constraint in item_constraints:
        merged[constraint.key] = replace(constraint, scope=SCOPE_ITEM)
    return list(merged.values())


def convert_hard_facets_to_constraints(
    hard_facets: Optional[Dict[str, Any]],
    scope: str = SCOPE_GLOBAL,
) -> List[FacetConstraint]:
    """{'size': 'l', 'color': None, ...} -> [FacetConstraint('size', 'l')]."""
    constraints = []
    for key in ("size", "color", "material"):
        value = (hard_facets or {}).get(key)
        if value:
            constraints.append(FacetConstraint(key, str(value), scope))
    return constraints


def convert_option_constraints(
    option_constraints: Iterable[Any],
    scope: str = SCOPE_ITEM,
) -> List[FacetConstraint]:
    """Bundle item option constraints ({name, value} pairs) to FacetConstraints."""
    constraints = []
    for option in option_constraints or []:
        name = getattr(option, "name", None) if not isinstance(option, dict) else option.get("name")
        value = getattr(option, "value", None) if not isinstance(option, dict) else option.get("value")
        if name and value:
            constraints.append(FacetConstraint(str(name), str(value), scope))
    return constraints


def determine_constraint_scope(constraint_value: str, user_intent: str, item_hard_terms: List[str]) -> str:
    """
    Decide whether a facet in a bundle query applies to one item or all.

    "shirt in blue and pants" binds blue to the shirt; "shirt and pants in
    blue" (value trailing the whole request) applies it globally. Ambiguous
    cases stay item-scoped.
    """
    intent = (user_intent or "").lower().strip()
    value = re.escape((constraint_value or "").lower().strip())
    if not value:
        return SCOPE_ITEM

    for term in item_hard_terms:
        term_re = re.escape(term.lower().strip())
        if re.search(rf"\b{term_re}\s+(?:in\s+)?{value}\b", intent) or re.search(rf"\b{value}\s+{term_re}\b", intent):
            return SCOPE_ITEM

    if re.search(rf"(?:,|\band\b|\bor\b)\s+[^,]+\s+(?:in\s+)?{value}\b", intent):
        return SCOPE_GLOBAL
    if re.search(rf"(?:in\s+)?{value}\s*$", intent):
        return SCOPE_GLOBAL
    return SCOPE_ITEM


def _find_key(constraints: List[FacetConstraint], key: str) -> Optional[FacetConstraint]:
    for constraint in constraints:
        if constraint.key == key:
            return constraint
    return None


def relax_constraints(
    constraints: List[FacetConstraint],
    discovered_option_names: Set[str],
    stage: int,
) -> RelaxationStep:
    """
    Relax constraints for the given stage.

    Stage 1 removes exactly one constraint; stage 2 removes all of them.
    """
    if not constraints:
        return RelaxationStep(constraints=[])

    if stage == 1:
        discovered = {normalize_option_name(n) for n in discovered_option_names}
        to_remove = None
        reason = ""

        if "size" not in discovered:
            to_remove = _find_key(constraints, "size")
            reason = "size_not_in_shop_options"
        if to_remove is None:
            for key in STAGE1_PRIORITY:
                to_remove = _find_key(constraints, key)
                if to_remove is not None:
                    reason = f"{key}_relaxed_stage1"
                    break
        if to_remove is None:
            to_remove = constraints[0]
            reason = "first_constraint_relaxed_stage1"

        remaining = [c for c in constraints if c is not to_remove]
        return RelaxationStep(constraints=remaining, removed=[to_remove], reason=reason)

    return RelaxationStep(constraints=[], removed=list(constraints), reason="all_constraints_relaxed_stage2")


def filter_with_relaxation(
    candidates: List[CandidateProduct],
    constraints: List[FacetConstraint],
    vocabulary: FacetVocabulary,
    min_results: int = 1,
    require_available: bool = True,
) -> Tuple[List[CandidateProduct], Dict[str, Any]]:
    """
    Apply constraints, relaxing in stages until ``min_results`` products match.

    Key behavior:
    - If enough products satisfy every constraint, no relaxation happens
    - If every eligible candidate already matches, no relaxation happens
      (dropping constraints cannot add anything)
    - Stage 1 and stage 2 are tried in order, stopping at the first that
      reaches ``min_results``; otherwise the last stage's matches are returned
    - A stage that adds no matches is not applied and not reported

    Returns:
        Tuple of:
        - Matching candidates
        - Relaxation state dict with:
            - all_criteria_met: True if no constraint was dropped
            - met_constraints: constraints still applied
            - relaxed_constraints: constraints dropped to find results
            - reasons: relaxation reason codes, in order
            - stage: 0 (none), 1 or 2
    """
    current = list(constraints)
    relaxed: List[FacetConstraint] = []
    reasons: List[str] = []

    def _apply(active: List[FacetConstraint]) -> List[CandidateProduct]:
        return [p for p in candidates if product_satisfies(p, active, require_available)]

    matches = _apply(current)
    eligible = len(_apply([])) if current else len(matches)
    logger.info(f"Constraint filter: {len(matches)}/{len(candidates)} match {[(c.key, c.value) for c in current]}")

    stage = 0
    for attempt in (1, 2):
        if len(matches) >= min_results or len(matches) >= eligible or not current:
            break
        step = relax_constraints(current, vocabulary.option_names, attempt)
        relaxed_matches = _apply(step.constraints)
        logger.info(
            f"Relaxation stage {attempt} ({step.reason}): removed "
            f"{[(c.key, c.value) for c in step.removed]} -> {len(relaxed_matches)} matches"
        )
        if len(relaxed_matches) <= len(matches):
            continue
        stage = attempt
        current = step.constraints
        relaxed.extend(step.removed)
        if step.reason:
            reasons.append(step.reason)
        matches = relaxed_matches

    state = {
        "all_criteria_met": not relaxed,
        "met_constraints": current,
        "relaxed_constraints": relaxed,
        "reasons": reasons,
        "stage": stage,
    }
    return matches, state
