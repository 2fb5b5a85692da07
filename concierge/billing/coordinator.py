"""
Delivery and billing coordinator.

Results are delivered to any number of polling clients, but each session
is billed at most once. Coordination across requests and processes goes
through conditional UPDATEs on the session row only:

- delivered_at: UPDATE ... WHERE delivered_at IS NULL
- charge lock:  UPDATE ... SET charge_lock_at=now
                WHERE charged_at IS NULL AND charge_lock_at IS NULL

Whoever gets rowcount 1 on the lock runs the charge; everyone else skips
billing and still gets the products.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from concierge.billing.errors import SubscriptionCancelledError, SubscriptionNotFoundError
from concierge.billing.plans import (
    STATUS_ACTIVE,
    credits_for_delivered_count,
    credits_to_x2,
    overage_delta_x2,
)
from concierge.core.config import ConciergeConfig, get_config
from concierge.db.database import get_session_factory, utcnow
from concierge.db.models import ConciergeSession, SessionStatus, Subscription, UsageEvent
from concierge.utils.logger import get_logger

logger = get_logger("billing.coordinator")


@dataclass
class DeliveryResult:
    status: str
    handles: List[str] = field(default_factory=list)
    reasoning: Optional[str] = None
    error: Optional[str] = None
    charged: bool = False
    credits_burned: float = 0.0


class DeliveryCoordinator:
    """Serves saved results and bills each session exactly once."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, config: Optional[ConciergeConfig] = None):
        self._session_factory = session_factory
        self.config = config or get_config()

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    def deliver(self, public_token: str) -> Optional[DeliveryResult]:
        """
        Return the session's saved results, stamping delivery and charging
        on the first successful poll.

        Returns None for an unknown token. Billing failures never fail the
        delivery.
        """
        with self.session_factory() as db:
            session = db.query(ConciergeSession).filter(ConciergeSession.public_token == public_token).first()
            if session is None:
                return None
            if session.status != SessionStatus.COMPLETE:
                return DeliveryResult(status=session.status, error=session.error)

            session_id = session.id
            shop_id = session.shop_id
            experience_id = session.experience_id
            result = session.result
            handles = list(result.product_handles or []) if result else []
            reasoning = result.reasoning if result else None

            now = utcnow()
            stamped = db.execute(
                update(ConciergeSession)
                .where(ConciergeSession.id == session_id, ConciergeSession.delivered_at.is_(None))
                .values(delivered_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if stamped.rowcount:
                logger.info(f"Session {public_token}: first delivery ({len(handles)} products)")

            delivery = DeliveryResult(status=SessionStatus.COMPLETE, handles=handles, reasoning=reasoning)
            if handles:
                credits = self._charge_once(db, session_id, public_token, shop_id, experience_id, len(handles))
                if credits is not None:
                    delivery.charged = True
                    delivery.credits_burned = credits
            return delivery

    def _acquire_lock(self, db: Session, session_id: str, now: datetime) -> bool:
        acquired = db.execute(
            update(ConciergeSession)
            .where(
                ConciergeSession.id == session_id,
                ConciergeSession.charged_at.is_(None),
                ConciergeSession.charge_lock_at.is_(None),
            )
            .values(charge_lock_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return acquired.rowcount == 1

    def _release_lock(self, db: Session, session_id: str) -> None:
        db.execute(
            update(ConciergeSession)
            .where(ConciergeSession.id == session_id)
            .values(charge_lock_at=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _charge_once(
        self,
        db: Session,
        session_id: str,
        public_token: str,
        shop_id: str,
        experience_id: Optional[str],
        delivered_count: int,
    ) -> Optional[float]:
        """Charge under the lock. Returns credits burned, or None when nothing was charged."""
        if not self._acquire_lock(db, session_id, utcnow()):
            logger.info(f"Session {public_token}: charge lock not acquired (already charged or in flight)")
            return None
        logger.info(f"Session {public_token}: charge lock acquired")

        credits = credits_for_delivered_count(delivered_count)
        burn_x2 = credits_to_x2(credits)
        try:
            subscription = (
                db.query(Subscription)
                .filter(Subscription.shop_id == shop_id)
                .with_for_update()
                .first()
            )
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found for shop: {shop_id}")
            if subscription.status != STATUS_ACTIVE:
                raise SubscriptionCancelledError(f"Subscription for shop {shop_id} is {subscription.status}")

            delta_x2 = overage_delta_x2(subscription, burn_x2)
            subscription.credits_used_x2 = (subscription.credits_used_x2 or 0) + burn_x2
            subscription.overage_credits_x2 = (subscription.overage_credits_x2 or 0) + delta_x2

            db.add(UsageEvent(
                shop_id=shop_id,
                event_type=self.config.usage_event_type,
                event_metadata={
                    "sessionToken": public_token,
                    "experienceId": experience_id,
                    "resultCount": delivered_count,
                    "overageDeltaX2": delta_x2,
                },
                credits_burned=credits,
            ))
            db.execute(
                update(ConciergeSession)
                .where(ConciergeSession.id == session_id)
                .values(charged_at=utcnow(), charge_lock_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as e:
            db.rollback()
            self._release_lock(db, session_id)
            logger.error(f"Session {public_token}: charge failed, lock released: {e}")
            return None

        logger.info(
            f"Session {public_token}: charged {credits} credits for {delivered_count} products "
            f"(overage delta x2={delta_x2})"
        )
        return credits
