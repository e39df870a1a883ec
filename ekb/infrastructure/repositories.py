# infrastructure/repositories.py
"""Database repository implementations"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ekb.config import settings
from ekb.core.domain import ConversationTurn, Role, TextChunk
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import IChunkRepository, IConversationMemory
from ekb.database.session import ConversationTurnEntity, TextChunkEntity, get_session, utcnow

logger = logging.getLogger(settings.LOGGER_NAME)

class SQLChunkRepository(IChunkRepository):
    def __init__(self, session_factory: async_sessionmaker):
        self._sessions = session_factory

    def _to_domain(self, entity: Optional[TextChunkEntity]) -> Optional[TextChunk]:
        """Converts an SQLAlchemy entity to a domain model."""
        if entity is None:
            return None
        return TextChunk(
            id=entity.id, # type: ignore
            document_id=entity.document_id, # type: ignore
            content=entity.content, # type: ignore
            chunk_index=entity.chunk_index, # type: ignore
            start_pos=entity.start_pos, # type: ignore
            end_pos=entity.end_pos, # type: ignore
            word_count=entity.word_count or 0, # type: ignore
            embedding=entity.embedding, # type: ignore
        )

    async def create(self, chunk: TextChunk) -> None:
        try:
            async with get_session(self._sessions) as session:
                session.add(TextChunkEntity(
                    id=chunk.id,
                    document_id=chunk.document_id,
                    content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    start_pos=chunk.start_pos,
                    end_pos=chunk.end_pos,
                    word_count=chunk.word_count,
                    embedding=chunk.embedding,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Failed to create chunk {chunk.id}: {e}") from e

    async def get_by_ids(self, chunk_ids: List[str]) -> List[TextChunk]:
        if not chunk_ids:
            return []
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(
                    select(TextChunkEntity).where(TextChunkEntity.id.in_(list(chunk_ids)))
                )
                entities = result.scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Failed to load chunks: {e}") from e
        chunks = [self._to_domain(e) for e in entities]
        return [c for c in chunks if c is not None]

    async def list_by_document(self, document_id: str) -> List[TextChunk]:
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(
                    select(TextChunkEntity)
                    .where(TextChunkEntity.document_id == document_id)
                    .order_by(TextChunkEntity.chunk_index.asc(), TextChunkEntity.created_at.asc())
                )
                entities = result.scalars().all()
        except SQLAlchemyError as e:
            raise UpstreamError(f"Failed to fetch document chunks: {e}") from e
        chunks = [self._to_domain(e) for e in entities]
        return [c for c in chunks if c is not None]

    async def ids_by_document(self, document_id: str) -> List[str]:
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(
                    select(TextChunkEntity.id).where(TextChunkEntity.document_id == document_id)
                )
                return [row[0] for row in result]
        except SQLAlchemyError as e:
            raise UpstreamError(f"Failed to fetch chunk ids: {e}") from e

    async def delete_by_document(self, document_id: str) -> int:
        try:
            async with get_session(self._sessions) as session:
                result = await session.execute(
                    delete(TextChunkEntity).where(TextChunkEntity.document_id == document_id)
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise UpstreamError(f"Failed to delete document chunks: {e}") from e


class SQLConversationMemory(IConversationMemory):
    """
    Conversation log stored as one row per turn under a session-scoped key.

    Every append pushes the expiry of the whole session forward by the TTL, so
    a session lives for TTL after its last turn. Expired rows are invisible to
    readers and purged on the next append.
    """

    def __init__(self, session_factory: async_sessionmaker,
                 ttl_seconds: int = settings.CONVERSATION_TTL_SECONDS):
        self._sessions = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    @staticmethod
    def session_key(user_id: str, session_id: str) -> str:
        return f"rag:hist:{user_id}:{session_id}"

    async def load(self, user_id: str, session_id: str) -> List[ConversationTurn]:
        if not session_id:
            return []
        key = self.session_key(user_id, session_id)
        async with get_session(self._sessions) as session:
            result = await session.execute(
                select(ConversationTurnEntity)
                .where(ConversationTurnEntity.session_key == key)
                .where(ConversationTurnEntity.expires_at > utcnow())
                .order_by(ConversationTurnEntity.id.asc())
            )
            rows = result.scalars().all()
        return [ConversationTurn(role=Role.from_string(r.role), content=r.content) for r in rows]

    async def append(self, user_id: str, session_id: str, turn: ConversationTurn) -> None:
        if not session_id:
            return
        key = self.session_key(user_id, session_id)
        now = utcnow()
        expires_at = now + self._ttl
        async with get_session(self._sessions) as session:
            await session.execute(
                delete(ConversationTurnEntity)
                .where(ConversationTurnEntity.session_key == key)
                .where(ConversationTurnEntity.expires_at <= now)
            )
            session.add(ConversationTurnEntity(
                session_key=key,
                role=turn.role.value,
                content=turn.content,
                created_at=now,
                expires_at=expires_at,
            ))
            await session.execute(
                update(ConversationTurnEntity)
                .where(ConversationTurnEntity.session_key == key)
                .values(expires_at=expires_at)
            )
            await session.commit()
