# services/vector_service.py
import logging
import uuid
from typing import List, Optional

from ekb.config import settings
from ekb.core.chunking import ChunkEngine
from ekb.core.domain import ScoredChunk, TextChunk
from ekb.core.exceptions import CacheError, ValidationError
from ekb.core.interfaces import (
    ICache, IChunkRepository, IChunkSearcher, IEmbeddingService, IVectorStore
)
from ekb.utils.common import embedding_to_bytes, make_cache_key, validate_document_id

logger = logging.getLogger(settings.LOGGER_NAME)

DEFAULT_SEARCH_LIMIT = 10


class VectorPipelineService(IChunkSearcher):
    """
    Chunk, embed and store documents; answer similarity searches.

    The relational store is the source of truth for chunk rows. The vector
    index holds the same ids and is written after the rows, so a failed
    vector insert leaves rows that are simply never returned by search.
    """

    def __init__(
        self,
        chunk_repo: IChunkRepository,
        vector_store: IVectorStore,
        embedding_service: IEmbeddingService,
        cache: Optional[ICache] = None,
        chunk_engine: Optional[ChunkEngine] = None,
        search_cache_ttl: int = settings.SEARCH_CACHE_TTL_SECONDS,
        replace_existing: bool = settings.INGEST_REPLACE_EXISTING
    ):
        self.chunk_repo = chunk_repo
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.cache = cache
        self.chunk_engine = chunk_engine or ChunkEngine(settings.DEFAULT_CHUNK_SIZE)
        self.search_cache_ttl = search_cache_ttl
        self.replace_existing = replace_existing

    # ----- Ingestion -----

    def chunk_text(self, document_id: str, content: str, chunk_size: int = 0) -> List[TextChunk]:
        if not validate_document_id(document_id):
            raise ValidationError(f"Invalid document ID format: {document_id!r}")
        chunks = self.chunk_engine.chunk(document_id, content, chunk_size)
        logger.info(f"Chunked document {document_id} into {len(chunks)} chunks")
        return chunks

    async def generate_embeddings(self, chunks: List[TextChunk]) -> None:
        """Embed all chunks in one call, persist the rows, then index the vectors."""
        if not chunks:
            return
        embeddings = await self.embedding_service.embed([chunk.content for chunk in chunks])

        for chunk, embedding in zip(chunks, embeddings):
            if chunk.embedding is not None:
                # Stored by an earlier run: no dedup, persist as a new row
                chunk.id = str(uuid.uuid4())
            chunk.embedding = embedding_to_bytes(embedding)
            await self.chunk_repo.create(chunk)

        await self.vector_store.insert_chunks(chunks, embeddings)
        logger.info(f"Stored {len(chunks)} chunks for document {chunks[0].document_id}")

    async def process_document(self, document_id: str, content: str, chunk_size: int = 0) -> List[TextChunk]:
        chunks = self.chunk_text(document_id, content, chunk_size)
        if self.replace_existing:
            await self.delete_document_chunks(document_id)
        await self.generate_embeddings(chunks)
        return chunks

    # ----- Retrieval -----

    def _cache_get(self, key: str) -> Optional[list]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Search cache read failed: {e}")
            return None

    def _cache_set(self, key: str, value: list) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, value, self.search_cache_ttl)
        except CacheError as e:
            logger.warning(f"Search cache write failed: {e}")

    async def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[ScoredChunk]:
        """Uncached search returning chunks with their backend scores, best first."""
        if limit <= 0:
            limit = DEFAULT_SEARCH_LIMIT
        hits = await self.vector_store.retrieve(query, limit)
        if not hits:
            return []

        rows = {chunk.id: chunk for chunk in await self.chunk_repo.get_by_ids([h.id for h in hits])}
        results = [ScoredChunk(chunk=rows[h.id], score=h.score) for h in hits if h.id in rows]
        return results[:limit]

    async def search_similar_chunks(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[TextChunk]:
        if limit <= 0:
            limit = DEFAULT_SEARCH_LIMIT
        key = make_cache_key("srch", query, limit)
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug(f"Search cache hit {key}")
            return [TextChunk(**item) for item in cached]

        chunks = [scored.chunk for scored in await self.search(query, limit)]
        self._cache_set(key, [chunk.to_dict() for chunk in chunks])
        return chunks

    # ----- Document chunks -----

    async def get_document_chunks(self, document_id: str) -> List[TextChunk]:
        if not validate_document_id(document_id):
            raise ValidationError(f"Invalid document ID format: {document_id!r}")
        return await self.chunk_repo.list_by_document(document_id)

    async def delete_document_chunks(self, document_id: str) -> int:
        """
        Remove a document's chunks from the index and the relational store.

        The index delete is best effort; only a relational failure is raised.
        """
        if not validate_document_id(document_id):
            raise ValidationError(f"Invalid document ID format: {document_id!r}")
        ids = await self.chunk_repo.ids_by_document(document_id)
        if ids:
            try:
                await self.vector_store.delete_by_ids(ids)
            except Exception as e:
                logger.error(f"Vector delete failed for document {document_id}: {e}")
        deleted = await self.chunk_repo.delete_by_document(document_id)
        logger.info(f"Deleted {deleted} chunks for document {document_id}")
        return deleted
