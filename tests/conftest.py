import asyncio
import hashlib
import math
import threading
import uuid
from typing import Dict, List

import pytest

from ekb.core.domain import ConversationTurn, Hit, LLMResponse, TextChunk
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import IEmbeddingService, ILLMService, IVectorStore
from ekb.database.session import create_engine_and_sessionmaker, init_models

DIM = 8


def _vector_for(text: str, dim: int = DIM) -> List[float]:
    """Deterministic unit vector derived from the character multiset of the text."""
    vec = [0.0] * dim
    for ch in text.lower():
        vec[int(hashlib.md5(ch.encode("utf-8")).hexdigest(), 16) % dim] += 1.0
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


class FakeEmbedder(IEmbeddingService):
    def __init__(self, dim: int = DIM, fail: bool = False):
        self._dim = dim
        self.fail = fail
        self.calls: List[List[str]] = []

    @property
    def dimension(self) -> int:
        return self._dim

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise UpstreamError("embedder down")
        return [_vector_for(t, self._dim) for t in texts]


class FakeVectorStore(IVectorStore):
    def __init__(self, embedder: IEmbeddingService):
        self.embedder = embedder
        self.rows: Dict[str, List[float]] = {}
        self.insert_calls = 0
        self.retrieve_calls = 0
        self.fail_insert = False
        self.fail_delete = False

    async def insert_chunks(self, chunks, embeddings):
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings length mismatch")
        self.insert_calls += 1
        if self.fail_insert:
            raise UpstreamError("vector store down")
        for chunk, vec in zip(chunks, embeddings):
            self.rows[chunk.id] = vec

    async def index_chunks(self, chunks):
        await self.insert_chunks(chunks, await self.embedder.embed([c.content for c in chunks]))

    async def retrieve(self, query, limit=10, score_threshold=0.0):
        self.retrieve_calls += 1
        if limit <= 0:
            limit = 10
        q = (await self.embedder.embed([query]))[0]
        scored = [Hit(id=cid, score=sum(a * b for a, b in zip(q, vec))) for cid, vec in self.rows.items()]
        scored.sort(key=lambda h: h.score, reverse=True)
        return [h for h in scored if not (score_threshold > 0 and h.score < score_threshold)][:limit]

    async def delete_by_ids(self, ids):
        if self.fail_delete:
            raise UpstreamError("vector delete failed")
        for cid in ids:
            self.rows.pop(cid, None)

    async def count(self):
        return len(self.rows)

    async def describe(self):
        return {"backend": "fake", "dim": self.embedder.dimension}


class FakeLLM(ILLMService):
    def __init__(self, answer: str = "The answer.", fragments=("Hello", " world"),
                 fail: bool = False, fail_after: int = -1, delay: float = 0.0):
        self.answer = answer
        self.fragments = list(fragments)
        self.fail = fail
        self.fail_after = fail_after
        self.delay = delay
        self.generate_calls: List[List[ConversationTurn]] = []
        self.stream_calls: List[List[ConversationTurn]] = []
        self.stream_closed = False

    async def generate(self, messages, temperature, max_tokens):
        self.generate_calls.append(list(messages))
        if self.fail:
            raise UpstreamError("llm down")
        return LLMResponse(content=self.answer,
                           usage={"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13})

    async def stream(self, messages, temperature, max_tokens):
        self.stream_calls.append(list(messages))
        if self.fail:
            raise UpstreamError("llm down")
        try:
            for i, fragment in enumerate(self.fragments):
                if i == self.fail_after:
                    raise UpstreamError("llm stream broke")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
        finally:
            self.stream_closed = True


class FakeConnection:
    """Runs thread-safe callbacks inline and records that they were posted."""

    def __init__(self):
        self.posted = 0
        self.settled = threading.Event()

    def add_callback_threadsafe(self, callback):
        self.posted += 1
        callback()
        self.settled.set()

    def wait(self, timeout: float = 5.0) -> bool:
        return self.settled.wait(timeout)


class FakeChannel:
    def __init__(self):
        self.acks: List[int] = []
        self.nacks: List[tuple] = []
        self.connection = FakeConnection()

    def basic_ack(self, delivery_tag):
        self.acks.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue=True):
        self.nacks.append((delivery_tag, requeue))


class FakeMethod:
    def __init__(self, delivery_tag: int = 1):
        self.delivery_tag = delivery_tag


class MemoryChunkSearcher:
    """Searcher returning a fixed chunk list and recording calls."""

    def __init__(self, chunks: List[TextChunk] = None, fail: bool = False):
        self.chunks = chunks or []
        self.fail = fail
        self.calls: List[tuple] = []

    async def search_similar_chunks(self, query, limit):
        self.calls.append((query, limit))
        if self.fail:
            raise UpstreamError("search down")
        return self.chunks[:limit]


@pytest.fixture
def doc_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_store(embedder) -> FakeVectorStore:
    return FakeVectorStore(embedder)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def session_factory(database_url):
    engine, factory = create_engine_and_sessionmaker(database_url)
    asyncio.run(init_models(engine))
    yield factory
    asyncio.run(engine.dispose())
