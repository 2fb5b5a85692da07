"""
SQLAlchemy database models.

The database is authoritative for:
- Concierge sessions, their messages and saved results
- Per-session billing state (delivered/charged timestamps and the charge lock)
- Shop subscriptions and credit counters
- Billable usage events
- AI ranking cache entries
"""

import uuid

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, JSON, Float
from sqlalchemy.orm import relationship

from concierge.db.database import Base, utcnow


class SessionStatus:
    COLLECTING = "COLLECTING"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class ConciergeSession(Base):
    """
    One shopper conversation on the storefront.

    Billing columns:
    - delivered_at: first time a poller received the result
    - charged_at: set exactly once, when credits were burned
    - charge_lock_at: held while a charge is in flight; always cleared
    """
    __tablename__ = "concierge_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    public_token = Column(String(64), unique=True, index=True, nullable=False)
    shop_id = Column(String(255), index=True, nullable=False)
    experience_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=SessionStatus.COLLECTING)
    result_count = Column(Integer, nullable=False, default=8)
    error = Column(Text, nullable=True)

    delivered_at = Column(DateTime, nullable=True)
    charged_at = Column(DateTime, nullable=True)
    charge_lock_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "ConciergeMessage",
        back_populates="session",
        order_by=lambda: [ConciergeMessage.created_at, ConciergeMessage.id],
        cascade="all, delete-orphan",
    )
    result = relationship("ConciergeResult", back_populates="session", uselist=False, cascade="all, delete-orphan")


class ConciergeMessage(Base):
    __tablename__ = "concierge_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("concierge_sessions.id"), index=True, nullable=False)
    role = Column(String(20), nullable=False)  # user | assistant
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    session = relationship("ConciergeSession", back_populates="messages")


class ConciergeResult(Base):
    """Saved ranking output; handles are stored in delivery order."""
    __tablename__ = "concierge_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("concierge_sessions.id"), unique=True, nullable=False)
    product_handles = Column(JSON, nullable=False, default=list)
    reasoning = Column(Text, nullable=True)
    source = Column(String(20), nullable=True)  # ai | cache | deterministic | bundle
    created_at = Column(DateTime, default=utcnow)

    session = relationship("ConciergeSession", back_populates="result")


class Subscription(Base):
    """
    Per-shop plan and credit counters.

    Credits are stored doubled as integers so half credits stay exact.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(String(255), unique=True, index=True, nullable=False)
    plan_tier = Column(String(20), nullable=False, default="TRIAL")
    status = Column(String(20), nullable=False, default="active")  # active | cancelled
    credits_included_x2 = Column(Integer, nullable=False, default=0)
    credits_addon_x2 = Column(Integer, nullable=False, default=0)
    credits_used_x2 = Column(Integer, nullable=False, default=0)
    overage_credits_x2 = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class UsageEvent(Base):
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(String(255), index=True, nullable=False)
    event_type = Column(String(50), index=True, nullable=False)
    # 'metadata' is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    credits_burned = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)


class RankingCacheEntry(Base):
    __tablename__ = "ranking_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(64), unique=True, index=True, nullable=False)
    shop_id = Column(String(255), index=True, nullable=False)
    user_intent = Column(Text, nullable=True)
    product_hash = Column(String(64), nullable=True)
    ranked_handles = Column(JSON, nullable=False, default=list)
    reasoning = Column(Text, nullable=True)
    result_count = Column(Integer, nullable=False)
    expires_at = Column(DateTime, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
