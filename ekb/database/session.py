# database/session.py

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Tuple

from sqlalchemy import Column, DateTime, Integer, LargeBinary, String, Text
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession, async_sessionmaker,
                                    create_async_engine)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from ekb.config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (portable across SQLite and server databases)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============= Models =============

class TextChunkEntity(Base):
    __tablename__ = "text_chunks"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    document_id = Column(String(36), nullable=False, index=True)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_pos = Column(Integer, nullable=False, default=0)
    end_pos = Column(Integer, nullable=False, default=0)
    word_count = Column(Integer, default=0)
    embedding = Column(LargeBinary, nullable=True)  # little-endian float64 bytes
    created_at = Column(DateTime, default=utcnow)

class ConversationTurnEntity(Base):
    __tablename__ = "conversation_turns"
    id = Column(Integer, primary_key=True, autoincrement=True)  # append order
    session_key = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # 'system', 'user' or 'assistant'
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


# ============= Engine =============

def create_engine_and_sessionmaker(
    database_url: str = settings.DATABASE_URL
) -> Tuple[AsyncEngine, async_sessionmaker]:
    """
    Build the process-wide async engine and its session factory.

    Called once at startup; the session factory is handed to repositories which
    open one scoped session per operation.
    """
    engine_kwargs = {"echo": False, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # File-backed SQLite: one connection per session, usable from any event loop
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    engine = create_async_engine(database_url, **engine_kwargs)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")


# ============= Session Factory =============

@asynccontextmanager
async def get_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a new database session with proper cleanup.

    Ensures rollback on errors and explicit closure.
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
