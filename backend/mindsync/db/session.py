"""Database engine and session management"""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from mindsync.core.config import settings
from mindsync.models.base import Base

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str) -> Engine:
    """Create an engine with the pool bounds from settings"""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={"connect_timeout": settings.DB_CONNECT_TIMEOUT}
    )


def get_engine() -> Engine:
    """Process-wide engine, created on first use"""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def get_db():
    """Dependency for FastAPI endpoints"""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=get_engine())
