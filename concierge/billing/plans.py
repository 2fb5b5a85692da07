"""
Plans, credit units and entitlements.

Credits are tracked in half-credit units ("x2") so 1.5-credit charges stay
exact integers in the database.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from concierge.billing.errors import BillingError
from concierge.db.models import Subscription

PLAN_TRIAL = "TRIAL"
PLAN_LITE = "LITE"
PLAN_GROWTH = "GROWTH"
PLAN_SCALE = "SCALE"
PLAN_PRO = "PRO"

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Plan:
    tier: str
    name: str
    price: float
    included_credits: int
    experiences: Optional[int]  # None = unlimited
    candidate_cap: int
    overage_rate: float  # per credit
    trial_days: Optional[int] = None


PLANS: Dict[str, Plan] = {
    PLAN_TRIAL: Plan(PLAN_TRIAL, "Trial", 0, 50, 1, 100, 0.12, trial_days=7),
    PLAN_LITE: Plan(PLAN_LITE, "Lite", 19, 300, 1, 120, 0.12),
    PLAN_GROWTH: Plan(PLAN_GROWTH, "Growth", 39, 1000, 3, 200, 0.08),
    PLAN_SCALE: Plan(PLAN_SCALE, "Scale", 79, 2500, 8, 300, 0.06),
    PLAN_PRO: Plan(PLAN_PRO, "Pro", 129, 5000, None, 400, 0.05),
}

CREDIT_ADDONS = {
    "credits_2000": 2000,
    "credits_5000": 5000,
}


def get_plan(tier: Optional[str]) -> Plan:
    return PLANS.get((tier or "").upper(), PLANS[PLAN_TRIAL])


def credits_for_delivered_count(delivered_count: int) -> float:
    """Credits burned for a delivered result list: 0, 1, 1.5 or 2."""
    if delivered_count <= 0:
        return 0.0
    if delivered_count <= 8:
        return 1.0
    if delivered_count <= 12:
        return 1.5
    return 2.0


def credits_to_x2(credits: float) -> int:
    return int(round(credits * 2))


def credits_from_x2(x2: int) -> float:
    return x2 / 2


def overage_delta_x2(subscription: Subscription, burn_x2: int) -> int:
    """Half-credits of this burn that fall beyond included + add-on credits."""
    total = (subscription.credits_included_x2 or 0) + (subscription.credits_addon_x2 or 0)
    previous_used = subscription.credits_used_x2 or 0
    previous_over = max(0, previous_used - total)
    new_over = max(0, previous_used + burn_x2 - total)
    return new_over - previous_over


def ensure_subscription(db: Session, shop_id: str, plan_tier: str = PLAN_TRIAL) -> Subscription:
    """
    Load the shop's subscription, creating it on the given plan if missing.
    Included credits are backfilled from the plan when zero. Caller commits.
    """
    subscription = db.query(Subscription).filter(Subscription.shop_id == shop_id).first()
    plan = get_plan(plan_tier)
    if subscription is None:
        subscription = Subscription(
            shop_id=shop_id,
            plan_tier=plan.tier,
            status=STATUS_ACTIVE,
            credits_included_x2=credits_to_x2(plan.included_credits),
            credits_addon_x2=0,
            credits_used_x2=0,
            overage_credits_x2=0,
        )
        db.add(subscription)
        db.flush()
    elif not subscription.credits_included_x2:
        subscription.credits_included_x2 = credits_to_x2(get_plan(subscription.plan_tier).included_credits)
    return subscription


def apply_credit_addon(db: Session, shop_id: str, addon_key: str) -> Subscription:
    """Add a one-time credit top-up to the shop's subscription. Caller commits."""
    if addon_key not in CREDIT_ADDONS:
        raise BillingError(f"Unknown add-on key: {addon_key}")
    subscription = ensure_subscription(db, shop_id)
    subscription.credits_addon_x2 = (subscription.credits_addon_x2 or 0) + credits_to_x2(CREDIT_ADDONS[addon_key])
    return subscription


def get_entitlements(db: Session, shop_id: str) -> Dict[str, Any]:
    """Plan limits and credit balance for a shop."""
    subscription = ensure_subscription(db, shop_id)
    plan = get_plan(subscription.plan_tier)
    included = subscription.credits_included_x2 or 0
    addon = subscription.credits_addon_x2 or 0
    used = subscription.credits_used_x2 or 0
    total = included + addon
    return {
        "plan_tier": plan.tier,
        "status": subscription.status,
        "included_credits_x2": included,
        "addon_credits_x2": addon,
        "used_credits_x2": used,
        "total_credits_x2": total,
        "remaining_x2": max(0, total - used),
        "overage_credits_x2": subscription.overage_credits_x2 or 0,
        "experiences_limit": plan.experiences,
        "candidate_cap": plan.candidate_cap,
        "overage_rate_per_credit": plan.overage_rate,
        "show_trial_badge": plan.tier == PLAN_TRIAL,
    }
