import asyncio

import pytest

from ekb.core.domain import ConversationTurn, RAGQueryRequest, Role, TextChunk
from ekb.core.exceptions import UpstreamError, ValidationError
from ekb.infrastructure.cache import InMemoryTTLCache
from ekb.infrastructure.repositories import SQLConversationMemory
from ekb.services.rag_query_service import SYSTEM_PROMPT, RAGQueryService

from conftest import FakeLLM, MemoryChunkSearcher


def _chunks(doc_id, n=3):
    return [TextChunk(document_id=doc_id, content=f"fact {i} " + "x" * 250, chunk_index=i) for i in range(n)]


class BrokenMemory:
    async def load(self, user_id, session_id):
        raise RuntimeError("memory down")

    async def append(self, user_id, session_id, turn):
        raise RuntimeError("memory down")


@pytest.fixture
def memory(session_factory):
    return SQLConversationMemory(session_factory, ttl_seconds=3600)


def test_empty_query_fails_before_any_call():
    searcher, llm = MemoryChunkSearcher(), FakeLLM()
    service = RAGQueryService(searcher, llm, cache=InMemoryTTLCache())
    with pytest.raises(ValidationError):
        asyncio.run(service.ask_sync("u1", RAGQueryRequest(query="   ")))
    assert searcher.calls == []
    assert llm.generate_calls == []


def test_ask_sync_builds_prompt_and_returns_sources(doc_id, memory):
    searcher, llm = MemoryChunkSearcher(_chunks(doc_id)), FakeLLM(answer="42")
    service = RAGQueryService(searcher, llm, memory=memory)

    result = asyncio.run(service.ask_sync("u1", RAGQueryRequest(query="What?", limit=2, session_id="s1")))

    assert result.answer == "42"
    assert result.usage["total_tokens"] == 13
    assert [s["chunk_index"] for s in result.sources] == [0, 1]
    assert all(len(s["content_excerpt"]) == 200 for s in result.sources)
    assert searcher.calls == [("What?", 2)]

    messages = llm.generate_calls[0]
    assert messages[0] == ConversationTurn(Role.SYSTEM, SYSTEM_PROMPT)
    assert messages[-1].role == Role.USER
    assert messages[-1].content.startswith("Question: What?\nContext:\n[chunk#0] fact 0")
    assert "\n[chunk#1] fact 1" in messages[-1].content


def test_history_is_replayed_between_system_and_user_turns(doc_id, memory):
    llm = FakeLLM(answer="second answer")
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id, 1)), llm, memory=memory)

    async def scenario():
        await service.ask_sync("u1", RAGQueryRequest(query="first", session_id="s1"))
        await service.ask_sync("u1", RAGQueryRequest(query="second", session_id="s1"))
        return await memory.load("u1", "s1")

    turns = asyncio.run(scenario())
    assert [t.content for t in turns] == ["first", "second answer", "second", "second answer"]
    second_call = llm.generate_calls[1]
    assert [m.role for m in second_call] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]
    assert second_call[1].content == "first"


def test_answer_cache_hit_skips_retrieval_and_llm(doc_id):
    searcher, llm = MemoryChunkSearcher(_chunks(doc_id)), FakeLLM(answer="cached")
    service = RAGQueryService(searcher, llm, cache=InMemoryTTLCache())

    async def scenario():
        first = await service.ask_sync("u1", RAGQueryRequest(query="q", limit=3))
        second = await service.ask_sync("u2", RAGQueryRequest(query="q", limit=3))
        return first, second

    first, second = asyncio.run(scenario())
    assert first.sources and second.answer == "cached"
    assert second.sources == [] and second.usage == {}
    assert len(llm.generate_calls) == 1
    assert len(searcher.calls) == 1


def test_retrieval_failure_aborts_before_llm():
    llm = FakeLLM()
    service = RAGQueryService(MemoryChunkSearcher(fail=True), llm)
    with pytest.raises(UpstreamError):
        asyncio.run(service.ask_sync("u1", RAGQueryRequest(query="q")))
    assert llm.generate_calls == []


def test_llm_failure_is_not_cached_or_remembered(doc_id, memory):
    cache = InMemoryTTLCache()
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id)), FakeLLM(fail=True), memory=memory, cache=cache)
    with pytest.raises(UpstreamError):
        asyncio.run(service.ask_sync("u1", RAGQueryRequest(query="q", session_id="s1")))
    assert len(cache) == 0
    assert asyncio.run(memory.load("u1", "s1")) == []


def test_memory_failures_are_swallowed(doc_id):
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id)), FakeLLM(answer="ok"), memory=BrokenMemory())
    result = asyncio.run(service.ask_sync("u1", RAGQueryRequest(query="q", session_id="s1")))
    assert result.answer == "ok"


def test_stream_relays_fragments_and_persists_two_turns(doc_id, memory):
    llm = FakeLLM(fragments=["Hel", "lo"])
    cache = InMemoryTTLCache()
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id, 3)), llm, memory=memory, cache=cache)

    async def scenario():
        received = [f async for f in service.ask_stream("u1", RAGQueryRequest(query="hi", session_id="s1"))]
        return received, await memory.load("u1", "s1")

    received, turns = asyncio.run(scenario())
    assert received == ["Hel", "lo"]
    assert turns == [ConversationTurn(Role.USER, "hi"), ConversationTurn(Role.ASSISTANT, "Hello")]
    assert len(cache) == 0
    assert llm.stream_closed


def test_stream_error_propagates_and_skips_memory(doc_id, memory):
    llm = FakeLLM(fragments=["a", "b", "c"], fail_after=1)
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id)), llm, memory=memory)

    async def scenario():
        received = []
        with pytest.raises(UpstreamError):
            async for fragment in service.ask_stream("u1", RAGQueryRequest(query="hi", session_id="s1")):
                received.append(fragment)
        return received, await memory.load("u1", "s1")

    received, turns = asyncio.run(scenario())
    assert received == ["a"]
    assert turns == []


def test_stream_closed_early_closes_upstream(doc_id, memory):
    llm = FakeLLM(fragments=["a", "b", "c"])
    service = RAGQueryService(MemoryChunkSearcher(_chunks(doc_id)), llm, memory=memory)

    async def scenario():
        stream = service.ask_stream("u1", RAGQueryRequest(query="hi", session_id="s1"))
        first = await stream.__anext__()
        await stream.aclose()
        return first, await memory.load("u1", "s1")

    first, turns = asyncio.run(scenario())
    assert first == "a"
    assert llm.stream_closed
    assert turns == []
