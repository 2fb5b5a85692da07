"""
Database connection and session management.
Uses SQLAlchemy; Postgres in production, SQLite for local runs and tests.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from concierge.core.config import get_config
from concierge.utils.logger import get_logger

logger = get_logger("db.database")

# Base class for all our database models (must be defined before engine)
Base = declarative_base()

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(url: str) -> Engine:
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Sessions are used from worker threads by the API server
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, **kwargs)


def init_db(url: Optional[str] = None) -> sessionmaker:
    """
    Create the engine and tables, and install the module-level session factory.

    Args:
        url: Database URL (defaults to DATABASE_URL / config database.url)

    Returns:
        The session factory
    """
    global engine, SessionLocal
    # Register models on Base.metadata
    from concierge.db import models  # noqa: F401

    url = url or get_config().database_url
    engine = create_db_engine(url)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autoflush=False, bind=engine)
    logger.info(f"Database initialized ({engine.url.get_backend_name()})")
    return SessionLocal


def get_session_factory() -> sessionmaker:
    if SessionLocal is None:
        return init_db()
    return SessionLocal


def get_db():
    """
    Dependency function that provides a database session.
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
