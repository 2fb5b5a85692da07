"""
Result diversity.

Ranked handles are re-ordered so a single vendor or product type does not
crowd out the rest of the list. The pass never invents handles and never
drops one while there is room: capped products are backfilled in their
original order once the diverse picks are exhausted.
"""
import math
from typing import Dict, List, Optional

from concierge.catalog.models import CandidateProduct

UNKNOWN = "unknown"


def price_bucket(price: Optional[float]) -> str:
    if price is None:
        return UNKNOWN
    if price < 50:
        return "low"
    if price < 200:
        return "medium"
    return "high"


def default_caps(max_results: int) -> tuple:
    """(max per vendor, max per type) for a result list of this size."""
    if max_results <= 8:
        return 2, 3
    return math.ceil(max_results / 3), math.ceil(max_results / 2)


def ensure_result_diversity(
    ranked_handles: List[str],
    candidates: List[CandidateProduct],
    max_results: int,
    max_per_vendor: Optional[int] = None,
    max_per_type: Optional[int] = None,
) -> List[str]:
    """
    Apply per-vendor and per-type caps to a ranked list, then backfill.

    Args:
        ranked_handles: Handles in ranked order
        candidates: Products the handles refer to
        max_results: Length of the final list
        max_per_vendor: Vendor cap (derived from max_results when None)
        max_per_type: Product type cap (derived from max_results when None)

    Returns:
        Up to max_results handles, each from ranked_handles, no duplicates
    """
    if not ranked_handles or not candidates or max_results <= 0:
        return list(dict.fromkeys(ranked_handles))[:max(0, max_results)]

    vendor_cap, type_cap = default_caps(max_results)
    vendor_cap = max_per_vendor or vendor_cap
    type_cap = max_per_type or type_cap
    by_handle = {p.handle: p for p in candidates}

    diverse: List[str] = []
    used = set()
    vendor_count: Dict[str, int] = {}
    type_count: Dict[str, int] = {}

    for handle in ranked_handles:
        if len(diverse) >= max_results:
            break
        product = by_handle.get(handle)
        if handle in used or product is None:
            continue
        vendor = (product.vendor or UNKNOWN).lower()
        product_type = (product.product_type or UNKNOWN).lower()
        if vendor_count.get(vendor, 0) >= vendor_cap or type_count.get(product_type, 0) >= type_cap:
            continue
        diverse.append(handle)
        used.add(handle)
        vendor_count[vendor] = vendor_count.get(vendor, 0) + 1
        type_count[product_type] = type_count.get(product_type, 0) + 1

    # Backfill in ranked order, ignoring caps
    for handle in ranked_handles:
        if len(diverse) >= max_results:
            break
        if handle not in used:
            diverse.append(handle)
            used.add(handle)

    return diverse


def measure_result_diversity(handles: List[str], candidates: List[CandidateProduct]) -> Dict[str, float]:
    """Vendor/type/price diversity scores in [0, 1] plus their average."""
    if not handles:
        return {"vendor_diversity": 0.0, "type_diversity": 0.0, "price_diversity": 0.0, "overall_score": 0.0}

    by_handle = {p.handle: p for p in candidates}
    vendors, types, prices = set(), set(), set()
    for handle in handles:
        product = by_handle.get(handle)
        if product is None:
            continue
        if product.vendor:
            vendors.add(product.vendor)
        if product.product_type:
            types.add(product.product_type)
        if product.price is not None:
            prices.add(round(product.price / 10) * 10)

    n = len(handles)
    vendor_diversity = len(vendors) / n
    type_diversity = len(types) / n
    price_diversity = len(prices) / n
    return {
        "vendor_diversity": min(1.0, vendor_diversity * 2),
        "type_diversity": min(1.0, type_diversity * 2),
        "price_diversity": min(1.0, price_diversity * 1.5),
        "overall_score": (vendor_diversity + type_diversity + price_diversity) / 3,
    }


def generate_empty_result_suggestions(user_intent: str, filtered_count: int, total_products: int) -> List[str]:
    """Hints shown when a search comes back empty or thin."""
    suggestions: List[str] = []
    if total_products == 0:
        return ["No products are currently available. Please check back later."]

    if filtered_count == 0:
        suggestions.append("Try adjusting your filters - your search criteria may be too specific.")
        suggestions.append("Check if price range or size preferences can be relaxed.")

    intent = (user_intent or "").lower()
    if any(word in intent for word in ("budget", "price", "under")):
        suggestions.append("Try widening your price range to see more options.")
    if any(word in intent for word in ("size", "small", "large")):
        suggestions.append("Consider checking other sizes - availability may vary.")
    if "color" in intent or "colour" in intent:
        suggestions.append("Try browsing other color options - your preferred color may be out of stock.")
    if "material" in intent or "fabric" in intent:
        suggestions.append("Similar materials or blends might work well too.")

    if not suggestions:
        suggestions.append("Try adjusting your search criteria or filters.")
        suggestions.append("Browse similar products or explore different categories.")
    return suggestions
