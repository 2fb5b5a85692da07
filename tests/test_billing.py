"""
Plans, credits and the exactly-once delivery charge.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from concierge.billing.coordinator import DeliveryCoordinator
from concierge.billing.errors import BillingError
from concierge.billing.plans import (
    PLAN_GROWTH,
    STATUS_CANCELLED,
    apply_credit_addon,
    credits_for_delivered_count,
    credits_from_x2,
    credits_to_x2,
    ensure_subscription,
    get_entitlements,
    get_plan,
    overage_delta_x2,
)
from concierge.db.models import (
    ConciergeResult,
    ConciergeSession,
    SessionStatus,
    Subscription,
    UsageEvent,
)


def _make_session(factory, token="tok-1", shop_id="shop-a", handles=None, status=SessionStatus.COMPLETE):
    with factory() as db:
        session = ConciergeSession(public_token=token, shop_id=shop_id, status=status, result_count=8)
        db.add(session)
        db.flush()
        if handles is not None:
            db.add(ConciergeResult(session_id=session.id, product_handles=handles, reasoning="Picked for you.", source="ai"))
        db.commit()


def _subscribe(factory, shop_id="shop-a", plan_tier="TRIAL"):
    with factory() as db:
        ensure_subscription(db, shop_id, plan_tier)
        db.commit()


def _session_row(factory, token="tok-1"):
    with factory() as db:
        return db.query(ConciergeSession).filter(ConciergeSession.public_token == token).one()


# ============================================================================
# Plans and credits
# ============================================================================

class TestCredits:
    @pytest.mark.parametrize("count,credits", [(0, 0.0), (1, 1.0), (8, 1.0), (9, 1.5), (12, 1.5), (13, 2.0), (16, 2.0)])
    def test_credits_for_delivered_count(self, count, credits):
        assert credits_for_delivered_count(count) == credits

    def test_half_credit_units(self):
        assert credits_to_x2(1.5) == 3
        assert credits_from_x2(3) == 1.5

    def test_unknown_plan_is_trial(self):
        assert get_plan("enterprise").tier == "TRIAL"
        assert get_plan("growth").included_credits == 1000

    def test_overage_delta(self):
        subscription = Subscription(credits_included_x2=4, credits_addon_x2=0, credits_used_x2=3)
        assert overage_delta_x2(subscription, 2) == 1
        subscription.credits_used_x2 = 6
        assert overage_delta_x2(subscription, 2) == 2
        subscription.credits_addon_x2 = 10
        assert overage_delta_x2(subscription, 2) == 0


class TestSubscriptions:
    def test_ensure_creates_trial(self, db_factory):
        with db_factory() as db:
            subscription = ensure_subscription(db, "shop-a")
            db.commit()
            assert subscription.plan_tier == "TRIAL"
            assert subscription.credits_included_x2 == 100
            assert ensure_subscription(db, "shop-a").id == subscription.id

    def test_included_credits_backfilled(self, db_factory):
        with db_factory() as db:
            db.add(Subscription(shop_id="shop-a", plan_tier=PLAN_GROWTH, credits_included_x2=0))
            db.commit()
            assert ensure_subscription(db, "shop-a").credits_included_x2 == 2000

    def test_addons_and_entitlements(self, db_factory):
        with db_factory() as db:
            apply_credit_addon(db, "shop-a", "credits_2000")
            db.commit()
            entitlements = get_entitlements(db, "shop-a")

        assert entitlements["total_credits_x2"] == 100 + 4000
        assert entitlements["remaining_x2"] == 4100
        assert entitlements["experiences_limit"] == 1
        assert entitlements["show_trial_badge"] is True

    def test_unknown_addon(self, db_factory):
        with db_factory() as db:
            with pytest.raises(BillingError):
                apply_credit_addon(db, "shop-a", "credits_999")


# ============================================================================
# Delivery coordinator
# ============================================================================

class TestDelivery:
    def test_unknown_token(self, db_factory, config):
        assert DeliveryCoordinator(db_factory, config).deliver("missing") is None

    def test_not_complete(self, db_factory, config):
        _make_session(db_factory, status=SessionStatus.PROCESSING)
        delivered = DeliveryCoordinator(db_factory, config).deliver("tok-1")
        assert delivered.status == SessionStatus.PROCESSING
        assert delivered.handles == []
        assert delivered.charged is False
        assert _session_row(db_factory).delivered_at is None

    def test_first_poll_charges(self, db_factory, config):
        _subscribe(db_factory)
        _make_session(db_factory, handles=["a", "b"])

        delivered = DeliveryCoordinator(db_factory, config).deliver("tok-1")

        assert delivered.status == SessionStatus.COMPLETE
        assert delivered.handles == ["a", "b"]
        assert delivered.reasoning == "Picked for you."
        assert delivered.charged is True
        assert delivered.credits_burned == 1.0

        row = _session_row(db_factory)
        assert row.delivered_at is not None
        assert row.charged_at is not None
        assert row.charge_lock_at is None
        with db_factory() as db:
            subscription = db.query(Subscription).filter(Subscription.shop_id == "shop-a").one()
            assert subscription.credits_used_x2 == 2
            event = db.query(UsageEvent).one()
            assert event.event_type == "AI_RANKING_EXECUTED"
            assert event.credits_burned == 1.0
            assert event.event_metadata == {
                "sessionToken": "tok-1",
                "experienceId": None,
                "resultCount": 2,
                "overageDeltaX2": 0,
            }

    def test_repeat_polls_do_not_charge_again(self, db_factory, config):
        _subscribe(db_factory)
        _make_session(db_factory, handles=[f"p{i}" for i in range(12)])
        coordinator = DeliveryCoordinator(db_factory, config)

        first = coordinator.deliver("tok-1")
        delivered_at = _session_row(db_factory).delivered_at
        second = coordinator.deliver("tok-1")

        assert first.charged is True
        assert first.credits_burned == 1.5
        assert second.charged is False
        assert second.handles == first.handles
        assert _session_row(db_factory).delivered_at == delivered_at
        with db_factory() as db:
            assert db.query(UsageEvent).count() == 1
            assert db.query(Subscription).one().credits_used_x2 == 3

    def test_empty_results_are_not_billed(self, db_factory, config):
        _subscribe(db_factory)
        _make_session(db_factory, handles=[])
        delivered = DeliveryCoordinator(db_factory, config).deliver("tok-1")
        assert delivered.status == SessionStatus.COMPLETE
        assert delivered.charged is False
        assert _session_row(db_factory).charged_at is None

    def test_missing_subscription_releases_lock(self, db_factory, config):
        _make_session(db_factory, handles=["a"])
        coordinator = DeliveryCoordinator(db_factory, config)

        delivered = coordinator.deliver("tok-1")

        assert delivered.handles == ["a"]
        assert delivered.charged is False
        row = _session_row(db_factory)
        assert row.charged_at is None
        assert row.charge_lock_at is None

        _subscribe(db_factory)
        assert coordinator.deliver("tok-1").charged is True

    def test_cancelled_subscription_is_not_charged(self, db_factory, config):
        _subscribe(db_factory)
        with db_factory() as db:
            db.query(Subscription).one().status = STATUS_CANCELLED
            db.commit()
        _make_session(db_factory, handles=["a"])

        delivered = DeliveryCoordinator(db_factory, config).deliver("tok-1")

        assert delivered.charged is False
        assert delivered.handles == ["a"]
        assert _session_row(db_factory).charge_lock_at is None
        with db_factory() as db:
            assert db.query(UsageEvent).count() == 0

    def test_overage_recorded(self, db_factory, config):
        with db_factory() as db:
            db.add(Subscription(shop_id="shop-a", credits_included_x2=2, credits_used_x2=2))
            db.commit()
        _make_session(db_factory, handles=["a"])

        DeliveryCoordinator(db_factory, config).deliver("tok-1")

        with db_factory() as db:
            subscription = db.query(Subscription).one()
            assert subscription.overage_credits_x2 == 2
            assert db.query(UsageEvent).one().event_metadata["overageDeltaX2"] == 2

    def test_concurrent_polls_charge_exactly_once(self, db_factory, config):
        _subscribe(db_factory)
        _make_session(db_factory, handles=["a", "b", "c"])
        coordinator = DeliveryCoordinator(db_factory, config)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: coordinator.deliver("tok-1"), range(8)))

        assert all(r.handles == ["a", "b", "c"] for r in results)
        assert sum(1 for r in results if r.charged) == 1
        with db_factory() as db:
            assert db.query(UsageEvent).count() == 1
            assert db.query(Subscription).one().credits_used_x2 == 2
