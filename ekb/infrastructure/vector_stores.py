# infrastructure/vector_stores.py
"""ChromaDB implementation of the vector store"""
import asyncio
import logging
from typing import Any, Dict, List

import numpy as np

from ekb.config import settings
from ekb.core.domain import Hit, TextChunk, VectorType
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import IEmbeddingService, IVectorStore

logger = logging.getLogger(settings.LOGGER_NAME)

DEFAULT_LIMIT = 10

class ChromaDBVectorStore(IVectorStore):
    """
    ChromaDB collection in cosine space.

    Scores are cosine similarities (1 - cosine distance), higher is better.
    ChromaDB has no binary vector type, so only float vectors are supported.
    """

    def __init__(
        self,
        client: Any,
        embedder: IEmbeddingService,
        collection_name: str = settings.VECTOR_COLLECTION,
        vector_type: VectorType = VectorType.FLOAT
    ):
        if vector_type != VectorType.FLOAT:
            raise ValueError("ChromaDB supports float vectors only; use Milvus for binary vectors")
        self._client = client
        self._embedder = embedder
        self._collection_name = collection_name
        self._collection: Any = None

    async def _ensure_collection(self):
        """Lazy initialization of collection"""
        if not self._collection:
            self._collection = await asyncio.to_thread(
                self._client.get_or_create_collection,
                name=self._collection_name,
                metadata={"hnsw:space": "cosine"}
            )
        return self._collection

    async def insert_chunks(self, chunks: List[TextChunk], embeddings: List[List[float]]) -> None:
        """Add pre-embedded chunks in one call"""
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings length mismatch")
        if not chunks:
            return

        # Convert to float32, the native precision of the index
        vectors = np.asarray(embeddings, dtype="float32").tolist()
        try:
            collection = await self._ensure_collection()
            await asyncio.to_thread(
                collection.add,
                ids=[chunk.id for chunk in chunks],
                embeddings=vectors,
                documents=[chunk.content for chunk in chunks],
                metadatas=[chunk.metadata() for chunk in chunks]
            )
        except Exception as e:
            logger.error(f"Failed to add chunks to ChromaDB: {e}")
            raise UpstreamError(f"Vector insert failed: {e}") from e
        logger.info(f"Indexed {len(chunks)} chunks into '{self._collection_name}'")

    async def index_chunks(self, chunks: List[TextChunk]) -> None:
        if not chunks:
            return
        embeddings = await self._embedder.embed([chunk.content for chunk in chunks])
        await self.insert_chunks(chunks, embeddings)

    async def retrieve(self, query: str, limit: int = DEFAULT_LIMIT, score_threshold: float = 0.0) -> List[Hit]:
        if limit <= 0:
            limit = DEFAULT_LIMIT
        query_embedding = (await self._embedder.embed([query]))[0]

        try:
            collection = await self._ensure_collection()
            total = await asyncio.to_thread(collection.count)
            if total == 0:
                return []
            results = await asyncio.to_thread(
                collection.query,
                query_embeddings=[np.asarray(query_embedding, dtype="float32").tolist()],
                n_results=min(limit, total),
                include=['distances', 'documents']
            )
        except Exception as e:
            logger.error(f"Search failed in ChromaDB: {e}")
            raise UpstreamError(f"Vector search failed: {e}") from e

        hits: List[Hit] = []
        ids = results['ids'][0] if results.get('ids') else []
        for i, chunk_id in enumerate(ids):
            score = 1.0 - float(results['distances'][0][i])
            preview = (results['documents'][0][i] or "")[:50] if results.get('documents') else ""
            logger.debug(f"Doc score id={chunk_id} score={score:.4f} preview={preview!r}")
            if score_threshold > 0 and score < score_threshold:
                continue
            hits.append(Hit(id=chunk_id, score=score))
            if len(hits) >= limit:
                break
        return hits

    async def delete_by_ids(self, ids: List[str]) -> None:
        if not ids:
            return
        try:
            collection = await self._ensure_collection()
            await asyncio.to_thread(collection.delete, ids=list(ids))
        except Exception as e:
            logger.error(f"Failed to delete chunks from ChromaDB: {e}")
            raise UpstreamError(f"Vector delete failed: {e}") from e

    async def count(self) -> int:
        """Get chunk count"""
        try:
            collection = await self._ensure_collection()
            return await asyncio.to_thread(collection.count)
        except Exception as e:
            raise UpstreamError(f"Vector count failed: {e}") from e

    async def describe(self) -> Dict[str, Any]:
        return {
            "backend": "chromadb",
            "collection": self._collection_name,
            "metric": "cosine",
            "vector_type": VectorType.FLOAT.value,
            "dim": self._embedder.dimension,
        }
