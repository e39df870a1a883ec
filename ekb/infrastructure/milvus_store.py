# infrastructure/milvus_store.py
"""Milvus implementation of the vector store (float/COSINE or binary/HAMMING)"""
import asyncio
import json
import logging
import threading
from typing import Any, Dict, List

import numpy as np
from pymilvus import Collection, CollectionSchema, DataType, FieldSchema, connections, utility

from ekb.config import settings
from ekb.core.domain import Hit, TextChunk, VectorType
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import IEmbeddingService, IVectorStore

logger = logging.getLogger(settings.LOGGER_NAME)

DEFAULT_LIMIT = 10
CONTENT_MAX_LENGTH = 8192

_INDEX_PARAMS = {
    VectorType.FLOAT: {"index_type": "HNSW", "metric_type": "COSINE",
                       "params": {"M": 16, "efConstruction": 200}},
    VectorType.BINARY: {"index_type": "BIN_IVF_FLAT", "metric_type": "HAMMING",
                        "params": {"nlist": 128}},
}

_SEARCH_PARAMS = {
    VectorType.FLOAT: {"metric_type": "COSINE", "params": {"ef": 64}},
    VectorType.BINARY: {"metric_type": "HAMMING", "params": {"nprobe": 16}},
}


def pack_binary_vector(vector: List[float]) -> bytes:
    """Binarize by sign (x > 0 -> 1) and pack 8 dimensions per byte."""
    bits = (np.asarray(vector, dtype="float32") > 0).astype(np.uint8)
    return np.packbits(bits).tobytes()


def build_delete_expr(ids: List[str]) -> str:
    """Boolean expression matching the given primary keys."""
    return f"id in {json.dumps(list(ids))}"


class MilvusVectorStore(IVectorStore):
    """
    Milvus collection with columns id (pk), vector, content and a JSON metadata blob.

    Float vectors are searched with COSINE (higher is better). Binary vectors
    are searched with HAMMING, where Milvus returns the closest first and the
    score is the bit distance.
    """

    def __init__(
        self,
        embedder: IEmbeddingService,
        collection_name: str = settings.VECTOR_COLLECTION,
        vector_field: str = settings.VECTOR_FIELD,
        dim: int = settings.VECTOR_DIM,
        vector_type: VectorType = VectorType.FLOAT,
        host: str = settings.MILVUS_HOST,
        port: int = settings.MILVUS_PORT,
        user: str = settings.MILVUS_USER,
        password: str = settings.MILVUS_PASSWORD,
        alias: str = "default"
    ):
        if vector_type == VectorType.BINARY and dim % 8 != 0:
            raise ValueError(f"Binary vector dimension must be a multiple of 8, got {dim}")
        self._embedder = embedder
        self.collection_name = collection_name
        self.vector_field = vector_field
        self.dim = dim
        self.vector_type = vector_type
        self._conn = {"host": host, "port": str(port), "user": user, "password": password}
        self._alias = alias
        self._collection: Any = None
        self._lock = threading.Lock()

    # ----- connection / schema -----

    def _connect(self) -> None:
        if connections.has_connection(self._alias):
            return
        connections.connect(alias=self._alias, **self._conn)

    def _build_schema(self) -> CollectionSchema:
        vector_dtype = (DataType.BINARY_VECTOR if self.vector_type == VectorType.BINARY
                        else DataType.FLOAT_VECTOR)
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=256),
            FieldSchema(name=self.vector_field, dtype=vector_dtype, dim=self.dim),
            FieldSchema(name="content", dtype=DataType.VARCHAR, max_length=CONTENT_MAX_LENGTH),
            FieldSchema(name="metadata", dtype=DataType.JSON),
        ]
        return CollectionSchema(fields=fields, description="Knowledge base chunks")

    def _ensure_collection_sync(self) -> Any:
        with self._lock:
            if self._collection is not None:
                return self._collection
            self._connect()
            if not utility.has_collection(self.collection_name, using=self._alias):
                collection = Collection(self.collection_name, schema=self._build_schema(), using=self._alias)
                collection.create_index(field_name=self.vector_field,
                                        index_params=_INDEX_PARAMS[self.vector_type])
                logger.info(f"Created Milvus collection '{self.collection_name}' "
                            f"({self.vector_type.value}, dim={self.dim})")
            else:
                collection = Collection(self.collection_name, using=self._alias)
            collection.load()
            self._collection = collection
            return collection

    async def _ensure_collection(self) -> Any:
        try:
            return await asyncio.to_thread(self._ensure_collection_sync)
        except Exception as e:
            raise UpstreamError(f"Milvus unavailable: {e}") from e

    def _to_native(self, vector: List[float]) -> Any:
        if self.vector_type == VectorType.BINARY:
            return pack_binary_vector(vector)
        return np.asarray(vector, dtype="float32").tolist()

    # ----- IVectorStore -----

    async def insert_chunks(self, chunks: List[TextChunk], embeddings: List[List[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings length mismatch")
        if not chunks:
            return

        columns = [
            [chunk.id for chunk in chunks],
            [self._to_native(vec) for vec in embeddings],
            [chunk.content for chunk in chunks],
            [chunk.metadata() for chunk in chunks],
        ]
        collection = await self._ensure_collection()
        try:
            await asyncio.to_thread(collection.insert, columns)
            await asyncio.to_thread(collection.flush)
        except Exception as e:
            logger.error(f"Milvus insert failed: {e}")
            raise UpstreamError(f"Vector insert failed: {e}") from e
        logger.info(f"Indexed {len(chunks)} chunks into '{self.collection_name}'")

    async def index_chunks(self, chunks: List[TextChunk]) -> None:
        logger.info(f"Index chunks collection={self.collection_name} field={self.vector_field} "
                    f"type={self.vector_type.value} dim={self.dim} count={len(chunks)}")
        if not chunks:
            return
        embeddings = await self._embedder.embed([chunk.content for chunk in chunks])
        await self.insert_chunks(chunks, embeddings)

    async def retrieve(self, query: str, limit: int = DEFAULT_LIMIT, score_threshold: float = 0.0) -> List[Hit]:
        if limit <= 0:
            limit = DEFAULT_LIMIT
        query_embedding = (await self._embedder.embed([query]))[0]
        collection = await self._ensure_collection()
        try:
            results = await asyncio.to_thread(
                collection.search,
                data=[self._to_native(query_embedding)],
                anns_field=self.vector_field,
                param=_SEARCH_PARAMS[self.vector_type],
                limit=limit,
                output_fields=["id", "content"],
            )
        except Exception as e:
            logger.error(f"Milvus search failed: {e}")
            raise UpstreamError(f"Vector search failed: {e}") from e

        hits: List[Hit] = []
        for hit in results[0]:
            score = float(hit.distance)
            if score_threshold > 0 and score < score_threshold:
                continue
            hits.append(Hit(id=str(hit.id), score=score))
            if len(hits) >= limit:
                break
        return hits

    async def delete_by_ids(self, ids: List[str]) -> None:
        if not ids:
            return
        collection = await self._ensure_collection()
        try:
            await asyncio.to_thread(collection.delete, build_delete_expr(ids))
        except Exception as e:
            logger.error(f"Milvus delete failed: {e}")
            raise UpstreamError(f"Vector delete failed: {e}") from e

    async def count(self) -> int:
        collection = await self._ensure_collection()
        try:
            return int(await asyncio.to_thread(lambda: collection.num_entities))
        except Exception as e:
            raise UpstreamError(f"Vector count failed: {e}") from e

    async def describe(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "backend": "milvus",
            "collection": self.collection_name,
            "metric": _SEARCH_PARAMS[self.vector_type]["metric_type"],
            "vector_type": self.vector_type.value,
            "dim": self.dim,
        }
        collection = await self._ensure_collection()
        info["fields"] = [
            f"{f.name}:{f.dtype.name}" + (f"(dim={f.params['dim']})" if "dim" in f.params else "")
            for f in collection.schema.fields
        ]
        return info
