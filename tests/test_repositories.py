import asyncio
from datetime import timedelta

from sqlalchemy import update

from ekb.core.domain import ConversationTurn, Role, TextChunk
from ekb.database.session import ConversationTurnEntity, get_session, utcnow
from ekb.infrastructure.repositories import SQLChunkRepository, SQLConversationMemory


def test_chunk_repository_crud(session_factory, doc_id):
    repo = SQLChunkRepository(session_factory)
    chunks = [TextChunk(document_id=doc_id, content=f"c{i}", chunk_index=i, word_count=2) for i in (1, 0, 2)]

    async def scenario():
        for chunk in chunks:
            await repo.create(chunk)
        listed = await repo.list_by_document(doc_id)
        by_ids = await repo.get_by_ids([chunks[0].id, "missing"])
        ids = await repo.ids_by_document(doc_id)
        deleted = await repo.delete_by_document(doc_id)
        after = await repo.list_by_document(doc_id)
        return listed, by_ids, ids, deleted, after

    listed, by_ids, ids, deleted, after = asyncio.run(scenario())
    assert [c.chunk_index for c in listed] == [0, 1, 2]
    assert [c.id for c in by_ids] == [chunks[0].id]
    assert set(ids) == {c.id for c in chunks}
    assert deleted == 3
    assert after == []


def test_get_by_ids_with_empty_input_returns_nothing(session_factory):
    assert asyncio.run(SQLChunkRepository(session_factory).get_by_ids([])) == []


def test_conversation_memory_keeps_append_order_per_session(session_factory):
    memory = SQLConversationMemory(session_factory, ttl_seconds=3600)

    async def scenario():
        await memory.append("u1", "s1", ConversationTurn(Role.USER, "hi"))
        await memory.append("u1", "s1", ConversationTurn(Role.ASSISTANT, "hello"))
        await memory.append("u1", "s2", ConversationTurn(Role.USER, "other session"))
        await memory.append("u2", "s1", ConversationTurn(Role.USER, "other user"))
        return await memory.load("u1", "s1")

    turns = asyncio.run(scenario())
    assert turns == [ConversationTurn(Role.USER, "hi"), ConversationTurn(Role.ASSISTANT, "hello")]


def test_conversation_memory_ignores_empty_session(session_factory):
    memory = SQLConversationMemory(session_factory)

    async def scenario():
        await memory.append("u1", "", ConversationTurn(Role.USER, "hi"))
        return await memory.load("u1", "")

    assert asyncio.run(scenario()) == []


def test_expired_session_is_invisible_and_append_refreshes_ttl(session_factory):
    memory = SQLConversationMemory(session_factory, ttl_seconds=3600)
    key = SQLConversationMemory.session_key("u1", "s1")

    async def expire_all():
        async with get_session(session_factory) as session:
            await session.execute(
                update(ConversationTurnEntity)
                .where(ConversationTurnEntity.session_key == key)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()

    async def scenario():
        await memory.append("u1", "s1", ConversationTurn(Role.USER, "old"))
        await expire_all()
        expired = await memory.load("u1", "s1")
        await memory.append("u1", "s1", ConversationTurn(Role.USER, "new"))
        return expired, await memory.load("u1", "s1")

    expired, fresh = asyncio.run(scenario())
    assert expired == []
    assert fresh == [ConversationTurn(Role.USER, "new")]


def test_session_key_format():
    assert SQLConversationMemory.session_key("user-1", "abc") == "rag:hist:user-1:abc"
