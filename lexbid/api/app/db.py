from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool
from .config import settings
import logging
from typing import Any

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create the application engine.

    SQLite (tests, local tooling) cannot take pool sizing arguments, so it gets
    the driver default pool; everything else uses a pre-pinged QueuePool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url, connect_args={"check_same_thread": False}, echo=False
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections every 30 min to avoid stale connections
        echo=False,
    )


try:
    engine = build_engine(settings.DATABASE_URL)
except Exception as e:
    logger.error(f"Failed to create database engine: {e}")
    raise
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db():
    """Database dependency for FastAPI"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
