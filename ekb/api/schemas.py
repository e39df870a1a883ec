# api/schemas.py
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ============= Vector service =============

class ChunkRequest(BaseModel):
    document_id: str
    content: str
    chunk_size: int = 0


class ChunkItem(BaseModel):
    id: str
    document_id: str
    content: str
    chunk_index: int
    start_pos: int = 0
    end_pos: int = 0
    word_count: int = 0


class ChunkResponse(BaseModel):
    document_id: str
    chunks: List[ChunkItem]
    count: int
    message: str


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = 10


class ScoredChunkItem(ChunkItem):
    score: float


class SearchResponse(BaseModel):
    query: str
    chunks: List[ChunkItem]
    count: int


class ScoredSearchResponse(BaseModel):
    chunks: List[ScoredChunkItem]


class DocumentChunksResponse(BaseModel):
    document_id: str
    chunks: List[ChunkItem]
    count: int


class DeleteResponse(BaseModel):
    document_id: str
    message: str


# ============= Query service =============

class QueryRequest(BaseModel):
    query: str
    limit: int = 0
    temperature: float = 0.0
    max_tokens: int = 0
    session_id: Optional[str] = ""


class SourceItem(BaseModel):
    id: str
    document_id: str
    chunk_index: int
    content_excerpt: str


class QueryResponse(BaseModel):
    answer: str
    sources: List[SourceItem]
    usage: Dict[str, int]
    latency_ms: int


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: int
