# database/session.py

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool options; in-memory SQLite runs on a static pool that takes none."""
    if ":memory:" in database_url:
        return {"echo": False}
    return {
        "echo": False,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,  # Check connection health before using
    }


# Setup SQLAlchemy async engine and session maker
async_engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False)
Base = declarative_base()

# --- SQLAlchemy Models ---

class PatientEntity(Base):
    __tablename__ = "patients"
    id = Column(String, primary_key=True)
    owner_user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    retrieval_index = Column(JSON, nullable=True)  # RetrievalIndex.to_dict()
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

class DocumentEntity(Base):
    __tablename__ = "documents"
    id = Column(String, primary_key=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    owner_user_id = Column(String, nullable=False, index=True)
    original_name = Column(String, nullable=False)
    stored_filename = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    page_spans = Column(JSON, nullable=False, default=list)  # list of PageSpan dicts
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)


# ============= Session Factory =============

@asynccontextmanager
async def get_session(session_factory: async_sessionmaker = AsyncSessionLocal) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a new database session with proper cleanup.

    Used by background processors where request-scoped sessions are unavailable.
    Ensures proper rollback on errors and explicit closure.
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_models(engine=async_engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")
