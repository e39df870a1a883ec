# services/rag_query_service.py
import logging
from typing import AsyncIterator, List, Optional

from ekb.config import settings
from ekb.core.domain import ConversationTurn, RAGQueryRequest, RAGQueryResult, Role, TextChunk
from ekb.core.exceptions import CacheError, ValidationError
from ekb.core.interfaces import ICache, IChunkSearcher, IConversationMemory, ILLMService
from ekb.utils.common import make_cache_key, truncate_chars

logger = logging.getLogger(settings.LOGGER_NAME)

SYSTEM_PROMPT = (
    "You are the retrieval-augmented assistant of the enterprise knowledge base. "
    "Answer strictly from the provided context and say clearly when it does not contain the answer."
)


def build_context(chunks: List[TextChunk]) -> str:
    return "".join(f"\n[chunk#{chunk.chunk_index}] {chunk.content}" for chunk in chunks)


def build_sources(chunks: List[TextChunk], preview_length: int = settings.PREVIEW_LENGTH) -> List[dict]:
    return [
        {
            "id": chunk.id,
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "content_excerpt": truncate_chars(chunk.content, preview_length),
        }
        for chunk in chunks
    ]


class RAGQueryService:
    """
    Retrieval-augmented question answering with per-session memory.

    Both delivery modes share retrieval and prompt construction. Only the
    synchronous path reads and writes the answer cache.
    """

    def __init__(
        self,
        searcher: IChunkSearcher,
        llm: ILLMService,
        memory: Optional[IConversationMemory] = None,
        cache: Optional[ICache] = None,
        answer_cache_ttl: int = settings.ANSWER_CACHE_TTL_SECONDS
    ):
        self.searcher = searcher
        self.llm = llm
        self.memory = memory
        self.cache = cache
        self.answer_cache_ttl = answer_cache_ttl

    # ----- Memory -----

    async def _load_history(self, caller_id: str, session_id: str) -> List[ConversationTurn]:
        if self.memory is None or not session_id:
            return []
        try:
            return await self.memory.load(caller_id, session_id)
        except Exception as e:
            logger.warning(f"Failed to load conversation history: {e}")
            return []

    async def _save_exchange(self, caller_id: str, session_id: str, query: str, answer: str) -> None:
        if self.memory is None or not session_id:
            return
        try:
            await self.memory.append(caller_id, session_id, ConversationTurn(Role.USER, query))
            await self.memory.append(caller_id, session_id, ConversationTurn(Role.ASSISTANT, answer))
        except Exception as e:
            logger.warning(f"Failed to save conversation history: {e}")

    # ----- Prompt -----

    async def _prepare(self, caller_id: str, request: RAGQueryRequest):
        chunks = await self.searcher.search_similar_chunks(request.query, request.limit)
        history = await self._load_history(caller_id, request.session_id)
        messages = [ConversationTurn(Role.SYSTEM, SYSTEM_PROMPT)]
        messages.extend(history)
        messages.append(ConversationTurn(
            Role.USER, f"Question: {request.query}\nContext:{build_context(chunks)}"
        ))
        return chunks, messages

    @staticmethod
    def _validate(request: RAGQueryRequest) -> None:
        if not request.query or not request.query.strip():
            raise ValidationError("query is empty")

    # ----- Public API -----

    async def ask_sync(self, caller_id: str, request: RAGQueryRequest) -> RAGQueryResult:
        self._validate(request)

        cache_key = make_cache_key("rag", request.query, request.limit)
        if self.cache is not None:
            try:
                cached = self.cache.get(cache_key)
            except CacheError as e:
                logger.warning(f"Answer cache read failed: {e}")
                cached = None
            if cached:
                logger.info(f"Answer cache hit {cache_key}")
                return RAGQueryResult(answer=cached, sources=[], usage={})

        chunks, messages = await self._prepare(caller_id, request)
        response = await self.llm.generate(messages, request.temperature, request.max_tokens)

        await self._save_exchange(caller_id, request.session_id, request.query, response.content)

        if self.cache is not None:
            try:
                self.cache.set(cache_key, response.content, self.answer_cache_ttl)
            except CacheError as e:
                logger.warning(f"Answer cache write failed: {e}")

        return RAGQueryResult(answer=response.content, sources=build_sources(chunks), usage=response.usage)

    async def ask_stream(self, caller_id: str, request: RAGQueryRequest) -> AsyncIterator[str]:
        """
        Yield answer fragments in model order.

        The exchange is saved only when the model stream ends normally; an
        error or early close by the consumer leaves memory untouched.
        """
        self._validate(request)
        _, messages = await self._prepare(caller_id, request)

        fragments = self.llm.stream(messages, request.temperature, request.max_tokens)
        parts: List[str] = []
        try:
            async for fragment in fragments:
                parts.append(fragment)
                yield fragment
        finally:
            # Releases the upstream HTTP response when the consumer stops early
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()

        await self._save_exchange(caller_id, request.session_id, request.query, "".join(parts))
