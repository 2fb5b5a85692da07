from concierge.sessions.service import SessionService, SessionStateError

__all__ = ["SessionService", "SessionStateError"]
