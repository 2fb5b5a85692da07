"""
Concierge session lifecycle.

    COLLECTING --process--> PROCESSING --> COMPLETE
                                       |--> FAILED --process--> PROCESSING

Messages are only accepted while COLLECTING. The PROCESSING transition is a
conditional UPDATE on the current status, so two concurrent process calls
cannot both run the pipeline for one session.
"""

import secrets
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from concierge.billing.plans import ensure_subscription
from concierge.catalog.models import CandidateProduct
from concierge.core.pipeline import ConciergePipeline, PipelineResult
from concierge.db.database import get_session_factory, utcnow
from concierge.db.models import ConciergeMessage, ConciergeResult, ConciergeSession, SessionStatus
from concierge.utils.logger import bind_shop, get_logger

logger = get_logger("sessions.service")

ALLOWED_RESULT_COUNTS = (8, 12, 16)
PROCESSABLE_STATUSES = (SessionStatus.COLLECTING, SessionStatus.FAILED)


class SessionStateError(RuntimeError):
    """Raised for an operation the session's current status does not allow."""


def _snapshot(session: ConciergeSession) -> Dict[str, Any]:
    return {
        "token": session.public_token,
        "shop_id": session.shop_id,
        "experience_id": session.experience_id,
        "status": session.status,
        "result_count": session.result_count,
        "error": session.error,
        "messages": [{"role": m.role, "content": m.text} for m in session.messages],
        "product_handles": list(session.result.product_handles or []) if session.result else [],
        "reasoning": session.result.reasoning if session.result else None,
        "delivered_at": session.delivered_at,
        "charged_at": session.charged_at,
    }


class SessionService:
    """Creates sessions, records messages and runs the pipeline for them."""

    def __init__(self, pipeline: Optional[ConciergePipeline] = None, session_factory: Optional[sessionmaker] = None):
        self._pipeline = pipeline
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    @property
    def pipeline(self) -> ConciergePipeline:
        if self._pipeline is None:
            self._pipeline = ConciergePipeline()
        return self._pipeline

    def start_session(
        self,
        shop_id: str,
        experience_id: Optional[str] = None,
        result_count: int = 8,
    ) -> Dict[str, Any]:
        """Open a COLLECTING session; the shop gets a trial subscription if it has none."""
        if result_count not in ALLOWED_RESULT_COUNTS:
            raise ValueError(f"result_count must be one of {ALLOWED_RESULT_COUNTS}, got {result_count}")
        with self.session_factory() as db:
            ensure_subscription(db, shop_id)
            session = ConciergeSession(
                public_token=secrets.token_urlsafe(24),
                shop_id=shop_id,
                experience_id=experience_id,
                status=SessionStatus.COLLECTING,
                result_count=result_count,
            )
            db.add(session)
            db.commit()
            db.refresh(session)
            logger.info(f"Started session {session.public_token} for shop {shop_id}")
            return _snapshot(session)

    def add_message(self, public_token: str, text: str, role: str = "user") -> Optional[Dict[str, Any]]:
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown message role: {role}")
        if not text or not text.strip():
            raise ValueError("Message text is empty")
        with self.session_factory() as db:
            session = db.query(ConciergeSession).filter(ConciergeSession.public_token == public_token).first()
            if session is None:
                return None
            if session.status != SessionStatus.COLLECTING:
                raise SessionStateError(f"Session {public_token} is {session.status}; messages are closed")
            db.add(ConciergeMessage(session_id=session.id, role=role, text=text.strip()))
            db.commit()
            db.refresh(session)
            return _snapshot(session)

    def get_session(self, public_token: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            session = db.query(ConciergeSession).filter(ConciergeSession.public_token == public_token).first()
            return _snapshot(session) if session else None

    def _claim(self, db, session: ConciergeSession) -> bool:
        claimed = db.execute(
            update(ConciergeSession)
            .where(ConciergeSession.id == session.id, ConciergeSession.status.in_(PROCESSABLE_STATUSES))
            .values(status=SessionStatus.PROCESSING, error=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return claimed.rowcount == 1

    def _set_status(self, db, session_id: str, status: str, error: Optional[str] = None) -> None:
        db.execute(
            update(ConciergeSession)
            .where(ConciergeSession.id == session_id)
            .values(status=status, error=error, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()

    async def process_session(
        self,
        public_token: str,
        candidates: List[CandidateProduct],
    ) -> Optional[PipelineResult]:
        """
        Run the pipeline over the session's messages and save the result.

        The last user message is the query and earlier messages are history.
        Pipeline errors mark the session FAILED and are re-raised.

        Returns:
            The pipeline result, or None for an unknown token
        """
        with self.session_factory() as db:
            session = db.query(ConciergeSession).filter(ConciergeSession.public_token == public_token).first()
            if session is None:
                return None
            user_messages = [m for m in session.messages if m.role == "user"]
            if not user_messages:
                raise SessionStateError(f"Session {public_token} has no shopper message to process")
            if not self._claim(db, session):
                raise SessionStateError(f"Session {public_token} cannot be processed in status {session.status}")

            session_id = session.id
            shop_id = session.shop_id
            bind_shop(shop_id)
            result_count = session.result_count
            query_message = user_messages[-1]
            history = [
                {"role": m.role, "content": m.text}
                for m in session.messages
                if m.id != query_message.id
            ]
            query = query_message.text

        try:
            result = await self.pipeline.run(shop_id, query, candidates, result_count, history)
        except Exception as e:
            logger.error(f"Session {public_token} failed: {e}")
            with self.session_factory() as db:
                self._set_status(db, session_id, SessionStatus.FAILED, str(e)[:1000])
            raise

        with self.session_factory() as db:
            saved = db.query(ConciergeResult).filter(ConciergeResult.session_id == session_id).first()
            if saved is None:
                saved = ConciergeResult(session_id=session_id)
                db.add(saved)
            saved.product_handles = list(result.handles)
            saved.reasoning = result.reasoning
            saved.source = result.source
            db.commit()
            self._set_status(db, session_id, SessionStatus.COMPLETE)

        logger.info(f"Session {public_token} complete with {len(result.handles)} products ({result.source})")
        return result
