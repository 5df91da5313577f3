"""
Database configuration with lazy initialization.

The engine is created on first access so the API can boot (and answer health
checks) before the database is reachable.
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool

from .core.config import settings
from .core.env import is_production_env

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None

Base = declarative_base()


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        if is_production_env():
            if not settings.database_url:
                raise ValueError("CRITICAL: DATABASE_URL is required in production")
            if settings.database_url.startswith("sqlite"):
                raise ValueError(
                    "CRITICAL: SQLite database is not supported in production. "
                    "Please use PostgreSQL."
                )

        db_url_safe = settings.database_url[:30] + "..." if len(settings.database_url) > 30 else settings.database_url
        logger.info(f"Creating database engine for: {db_url_safe}")

        if settings.database_url.startswith("sqlite"):
            _engine = create_engine(
                settings.database_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=0,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            _engine = create_engine(
                settings.database_url,
                poolclass=QueuePool,
                pool_size=20,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=3600,
            )
    return _engine


def get_session_local():
    """Get or create the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def SessionLocal():
    """Open a new session on the lazily created engine."""
    return get_session_local()()


def get_db():
    """FastAPI dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
