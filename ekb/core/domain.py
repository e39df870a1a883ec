# core/domain.py
"""Shared enumerations and domain models."""
import uuid
from enum import Enum

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

# ============= Enums =============

class ErrorCode(str, Enum):
    """Error codes attached to domain exceptions."""
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UPSTREAM_FAILED = "UPSTREAM_FAILED"
    DIMENSION_MISMATCH = "DIMENSION_MISMATCH"
    CACHE_FAILED = "CACHE_FAILED"


class Role(str, Enum):
    """Conversation roles understood by the chat model."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @staticmethod
    def from_string(role: str) -> 'Role':
        """Unknown roles fall back to USER."""
        try:
            return Role(role)
        except ValueError:
            return Role.USER


class VectorType(str, Enum):
    """Vector field flavour of the index."""
    FLOAT = "float"
    BINARY = "binary"


# ============= Domain Models =============

@dataclass
class TextChunk:
    """A contiguous text segment of a document; the unit of embedding and retrieval."""
    document_id: str
    content: str
    chunk_index: int
    start_pos: int = 0
    end_pos: int = 0
    word_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    embedding: Optional[bytes] = None  # little-endian float64 bytes

    def metadata(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "start_pos": self.start_pos,
            "end_pos": self.end_pos,
            "word_count": self.word_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "content": self.content, **self.metadata()}


@dataclass
class Hit:
    """A (chunk id, score) pair from a similarity search"""
    id: str
    score: float


@dataclass
class ScoredChunk:
    """A resolved chunk together with its backend similarity score"""
    chunk: TextChunk
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {**self.chunk.to_dict(), "score": self.score}


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str


@dataclass
class RAGQueryRequest:
    """One synchronous or streaming question"""
    query: str
    limit: int = 5
    temperature: float = 0.7
    max_tokens: int = 1024
    session_id: str = ""


@dataclass
class LLMResponse:
    content: str
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class RAGQueryResult:
    answer: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
