"""
Bundle selection.

A bundle request ("suit, shirt and shoes under $500") is split into one slot
per item. Each item gets its own candidate pool (gated by the item's terms,
filtered by its avoid terms and option constraints), a share of the total
budget and a share of the result slots. Budgets are soft: an in-budget
candidate is preferred, otherwise the cheapest one is taken. A product is
never placed in two slots.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from concierge.catalog.models import CandidateProduct
from concierge.matching.constraints import (
    FacetConstraint,
    convert_option_constraints,
    merge_constraints,
    product_satisfies,
)
from concierge.matching.gating import exclude_avoided, gate_with_expansion
from concierge.parsing.intent_parser import BundleItem, ParsedIntent
from concierge.recommendation.scoring import score_product_for_slot
from concierge.utils.logger import get_logger

logger = get_logger("recommendation.bundles")

TWO_ITEM_SPLIT = (0.7, 0.3)
PRIMARY_ITEM_SHARE = 0.6


@dataclass
class BundleSelection:
    handles: List[str] = field(default_factory=list)
    reasoning: str = ""
    total_price: float = 0.0
    budget_exceeded: Optional[bool] = None
    item_handles: Dict[int, List[str]] = field(default_factory=dict)


def allocate_budget(items: List[BundleItem], total_budget: Optional[float]) -> Dict[int, float]:
    """
    Per-item budget ceilings.

    Explicit item price ceilings are honored first. The rest of the total is
    shared by the remaining items: all of it to one item, 70/30 across two,
    60% to the first of three or more with the remainder split evenly.
    """
    allocated: Dict[int, float] = {}
    for index, item in enumerate(items):
        if item.constraints.price_ceiling:
            allocated[index] = item.constraints.price_ceiling
    if not total_budget:
        return allocated

    open_items = [i for i in range(len(items)) if i not in allocated]
    remaining = max(0.0, total_budget - sum(allocated.values()))
    if not open_items or remaining <= 0:
        return allocated

    if len(open_items) == 1:
        shares = [1.0]
    elif len(open_items) == 2:
        shares = list(TWO_ITEM_SPLIT)
    else:
        rest = (1.0 - PRIMARY_ITEM_SHARE) / (len(open_items) - 1)
        shares = [PRIMARY_ITEM_SHARE] + [rest] * (len(open_items) - 1)

    for index, share in zip(open_items, shares):
        allocated[index] = round(remaining * share, 2)
    return allocated


def allocate_slots(items: List[BundleItem], result_count: int) -> List[int]:
    """
    Slots per item: one each (in item order while slots last), the rest
    handed out round-robin weighted by quantity.
    """
    slots = [0] * len(items)
    if not items or result_count <= 0:
        return slots
    remaining = result_count
    for index in range(len(items)):
        if remaining == 0:
            break
        slots[index] = 1
        remaining -= 1

    weighted = [i for i, item in enumerate(items) for _ in range(max(1, item.quantity))]
    position = 0
    while remaining > 0:
        slots[weighted[position % len(weighted)]] += 1
        remaining -= 1
        position += 1
    return slots


def item_pool(
    item: BundleItem,
    candidates: List[CandidateProduct],
    global_constraints: Optional[List[FacetConstraint]] = None,
    avoid_terms: Optional[List[str]] = None,
    description_chars: int = 400,
) -> List[CandidateProduct]:
    """Candidates for one bundle item, best slot match first."""
    pool, _ = gate_with_expansion(candidates, item.hard_terms, description_chars)
    pool = exclude_avoided(pool, list(avoid_terms or []) + list(item.constraints.exclude_terms), description_chars)

    constraints = merge_constraints(
        global_constraints or [],
        convert_option_constraints(item.constraints.option_constraints),
    )
    if constraints:
        constrained = [p for p in pool if product_satisfies(p, constraints)]
        if constrained:
            pool = constrained
        else:
            logger.info(f"Bundle item {item.hard_terms}: option constraints matched nothing, keeping gated pool")

    slot_terms = list(item.hard_terms) + list(item.constraints.include_terms)
    scores = {p.handle: score_product_for_slot(p, slot_terms, description_chars) for p in pool}
    return sorted(pool, key=lambda p: (-scores[p.handle], not p.available, p.handle))


def _pick(pool: List[CandidateProduct], used: set, budget: Optional[float]) -> Optional[CandidateProduct]:
    fresh = [p for p in pool if p.handle not in used]
    if not fresh:
        return None
    if budget is None:
        return fresh[0]
    for product in fresh:
        if product.price is None or product.price <= budget:
            return product
    priced = [p for p in fresh if p.price is not None]
    return min(priced, key=lambda p: (p.price, p.handle)) if priced else fresh[0]


def select_bundle(
    candidates: List[CandidateProduct],
    intent: ParsedIntent,
    result_count: int,
    global_constraints: Optional[List[FacetConstraint]] = None,
    description_chars: int = 400,
) -> BundleSelection:
    """
    Fill result slots across bundle items.

    Primaries (one per item, in item order) come first, then the remaining
    slots per item in round-robin order.
    """
    items = intent.bundle_items
    budgets = allocate_budget(items, intent.total_budget)
    slots = allocate_slots(items, result_count)
    pools = [
        item_pool(item, candidates, global_constraints, intent.avoid_terms, description_chars)
        for item in items
    ]

    used: set = set()
    picked: Dict[int, List[CandidateProduct]] = {i: [] for i in range(len(items))}
    spent: Dict[int, float] = {i: 0.0 for i in range(len(items))}

    def _take(index: int) -> bool:
        budget = budgets.get(index)
        if budget is not None and picked[index]:
            # Extra picks share what is left of the item's allocation
            budget = max(0.0, budget - spent[index])
        product = _pick(pools[index], used, budget)
        if product is None:
            return False
        used.add(product.handle)
        picked[index].append(product)
        spent[index] += product.price or 0.0
        return True

    for index in range(len(items)):
        if slots[index] > 0 and not _take(index):
            logger.warning(f"Bundle item {index} {items[index].hard_terms}: no candidates")

    progress = True
    while progress:
        progress = False
        for index in range(len(items)):
            if len(picked[index]) < slots[index] and _take(index):
                progress = True

    order: List[CandidateProduct] = [picked[i][0] for i in range(len(items)) if picked[i]]
    depth = max((len(v) for v in picked.values()), default=0)
    for level in range(1, depth):
        for index in range(len(items)):
            if len(picked[index]) > level:
                order.append(picked[index][level])

    total_price = round(sum(p.price or 0.0 for p in order), 2)
    budget_exceeded = None if intent.total_budget is None else total_price > intent.total_budget

    filled = [i for i in range(len(items)) if picked[i]]
    item_names = [" ".join(items[i].hard_terms) for i in filled]
    reasoning = ""
    if item_names:
        reasoning = f"Picked the best match for each item in your bundle: {', '.join(item_names)}."
        if intent.total_budget is not None:
            if budget_exceeded:
                reasoning += " Some picks go over your budget because nothing cheaper matched."
            else:
                reasoning += " The selection stays within your budget."

    logger.info(
        f"Bundle selection: {len(order)} products across {len(filled)}/{len(items)} items, "
        f"total={total_price} budget={intent.total_budget}"
    )
    return BundleSelection(
        handles=[p.handle for p in order][:result_count],
        reasoning=reasoning,
        total_price=total_price,
        budget_exceeded=budget_exceeded,
        item_handles={i: [p.handle for p in picked[i]] for i in range(len(items))},
    )
