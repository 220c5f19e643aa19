"""
Engine and session factory for the consent OTP store.
"""
from pathlib import Path
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import QueuePool

from config import settings

logger = logging.getLogger(__name__)


def _resolve_url() -> str:
    url = settings.DATABASE_URL.strip()
    if url:
        return url
    local_db = Path(__file__).resolve().parent / "consent_service.db"
    logger.warning("DATABASE_URL is not set; using local SQLite database %s", local_db)
    return f"sqlite:///{local_db.as_posix()}"


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
    }


DATABASE_URL = _resolve_url()

engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

Base = declarative_base()
