# core/interfaces.py
"""Core interfaces for the knowledge base"""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from ekb.core.domain import ConversationTurn, Hit, LLMResponse, TextChunk

# ============= Embedding Service Interface =============
class IEmbeddingService(ABC):
    """Interface for embedding generation"""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Configured output dimension"""
        pass

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a batch of strings.

        Returns one vector per input, in input order, all of `dimension` length.
        Raises UpstreamError on timeout, transport failure or a malformed response.
        """
        pass

# ============= Vector Store Interface =============
class IVectorStore(ABC):
    """Interface for the nearest-neighbour index"""

    @abstractmethod
    async def insert_chunks(self, chunks: List[TextChunk], embeddings: List[List[float]]) -> None:
        """Columnar batch insert of pre-embedded chunks (all or nothing)"""
        pass

    @abstractmethod
    async def index_chunks(self, chunks: List[TextChunk]) -> None:
        """Insert chunks, deriving vectors from their content"""
        pass

    @abstractmethod
    async def retrieve(self, query: str, limit: int = 10, score_threshold: float = 0.0) -> List[Hit]:
        """Embed the query and return up to `limit` hits, best first"""
        pass

    @abstractmethod
    async def delete_by_ids(self, ids: List[str]) -> None:
        """Remove rows by chunk id. Unknown ids are ignored."""
        pass

    @abstractmethod
    async def count(self) -> int:
        """Get total number of indexed chunks"""
        pass

    @abstractmethod
    async def describe(self) -> Dict[str, Any]:
        """Collection diagnostics (name, metric, dimension)"""
        pass

# ============= Repository Interfaces =============
class IChunkRepository(ABC):
    """
    Relational persistence of chunk rows.

    Source of truth for chunk existence and document ownership; the vector
    index is a secondary index over the same ids.
    """

    @abstractmethod
    async def create(self, chunk: TextChunk) -> None:
        pass

    @abstractmethod
    async def get_by_ids(self, chunk_ids: List[str]) -> List[TextChunk]:
        """Rows for the given ids; missing ids are skipped."""
        pass

    @abstractmethod
    async def list_by_document(self, document_id: str) -> List[TextChunk]:
        """All chunks of a document ordered by chunk_index"""
        pass

    @abstractmethod
    async def ids_by_document(self, document_id: str) -> List[str]:
        pass

    @abstractmethod
    async def delete_by_document(self, document_id: str) -> int:
        """Delete all chunk rows for a document, returning the row count"""
        pass


class IConversationMemory(ABC):
    """Append-only per (user, session) conversation log with a TTL"""

    @abstractmethod
    async def load(self, user_id: str, session_id: str) -> List[ConversationTurn]:
        """Turns in append order; empty when the session is unknown or expired."""
        pass

    @abstractmethod
    async def append(self, user_id: str, session_id: str, turn: ConversationTurn) -> None:
        pass

# ============= Cache Interface =============
class ICache(ABC):
    """Key-value cache with per-entry TTL"""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Raises CacheError on backend failure"""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Raises CacheError on backend failure"""
        pass

# ============= LLM Interface =============
class ILLMService(ABC):
    """Chat model client"""

    @abstractmethod
    async def generate(
        self,
        messages: List[ConversationTurn],
        temperature: float,
        max_tokens: int
    ) -> LLMResponse:
        """Single completion. Raises UpstreamError."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: List[ConversationTurn],
        temperature: float,
        max_tokens: int
    ) -> AsyncIterator[str]:
        """Content fragments as they arrive; exhaustion means end of stream."""
        pass

# ============= Retrieval Interface =============
class IChunkSearcher(ABC):
    """Semantic chunk search used by the query service (local or remote)"""

    @abstractmethod
    async def search_similar_chunks(self, query: str, limit: int) -> List[TextChunk]:
        pass
