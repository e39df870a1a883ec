# infrastructure/embedding_services.py
"""Embedding generation: local sentence-transformers model or a remote HTTP endpoint"""
import asyncio
import logging
import threading
from typing import Dict, List

import numpy as np
import requests
from sentence_transformers import SentenceTransformer

from ekb.config import settings
from ekb.core.domain import ErrorCode
from ekb.core.exceptions import DimensionMismatchError, UpstreamError
from ekb.core.interfaces import IEmbeddingService

logger = logging.getLogger(settings.LOGGER_NAME)


def _check_dimensions(vectors: List[List[float]], expected: int, count: int) -> List[List[float]]:
    """Every response must carry `count` vectors of `expected` length."""
    if len(vectors) != count:
        raise UpstreamError(f"Embedder returned {len(vectors)} vectors for {count} inputs")
    for vec in vectors:
        if len(vec) != expected:
            raise UpstreamError(
                f"Embedder returned dimension {len(vec)}, expected {expected}",
                ErrorCode.DIMENSION_MISMATCH
            )
    return vectors


class SentenceTransformerEmbedding(IEmbeddingService):
    """
    Local sentence transformer with L2 normalization (unit vectors).

    With unit vectors cosine similarity equals the dot product, so the same
    vectors score consistently in ChromaDB (cosine space) and Milvus (COSINE).
    Models are loaded once per process and shared by every instance.
    """

    _models: Dict[str, SentenceTransformer] = {}  # Singleton cache
    _lock = threading.Lock()

    def __init__(self, model_name: str = settings.EMBEDDING_MODEL_NAME,
                 dimension: int = settings.VECTOR_DIM):
        self._dimension = dimension
        with SentenceTransformerEmbedding._lock:
            if model_name not in SentenceTransformerEmbedding._models:
                SentenceTransformerEmbedding._models[model_name] = self._load(model_name)
        self.model = SentenceTransformerEmbedding._models[model_name]

    @staticmethod
    def _load(model_name: str) -> SentenceTransformer:
        try:
            logger.info(f"Attempting to load model {model_name} from local cache...")
            model = SentenceTransformer(model_name, local_files_only=True)
            logger.info(f"Successfully loaded {model_name} from local cache.")
        except Exception as e:
            logger.warning(
                f"Model {model_name} not found in cache. Attempting online download. "
                f"This may take a few minutes. Error: {e}"
            )
            model = SentenceTransformer(model_name)
            logger.info(f"Successfully downloaded and loaded {model_name}.")
        return model

    @property
    def dimension(self) -> int:
        return self._dimension

    def _l2_normalize(self, arr: np.ndarray) -> np.ndarray:
        """L2 normalize (N, D) vectors to unit length."""
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms[norms == 0] = 1e-12  # Avoid division by zero
        return arr / norms

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            raw = await asyncio.to_thread(
                self.model.encode,
                texts,
                convert_to_tensor=False
            )
        except Exception as e:
            raise UpstreamError(f"Embedding model failed: {e}") from e
        normalized = self._l2_normalize(np.array(raw, dtype="float32").reshape(len(texts), -1))
        return _check_dimensions(normalized.tolist(), self._dimension, len(texts))


class HTTPEmbeddingService(IEmbeddingService):
    """OpenAI-compatible remote embedder (POST {base_url}/embeddings)."""

    def __init__(
        self,
        base_url: str = settings.EMBEDDING_BASE_URL,
        model: str = settings.EMBEDDING_MODEL_NAME,
        api_key: str = settings.EMBEDDING_API_KEY,
        dimension: int = settings.VECTOR_DIM,
        timeout: int = settings.REQUEST_TIMEOUT
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _post(self, texts: List[str]) -> List[List[float]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": texts},
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout as e:
            raise UpstreamError(f"Embedding request timed out after {self.timeout} seconds") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"Embedding request failed: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Embedding response is not JSON: {e}") from e

        try:
            # Sort by index to ensure input order
            data = sorted(payload["data"], key=lambda item: item.get("index", 0))
            return [list(map(float, item["embedding"])) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed embedding response: {e}") from e

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = await asyncio.to_thread(self._post, texts)
        return _check_dimensions(vectors, self._dimension, len(texts))


async def validate_embedding_dimension(embedder: IEmbeddingService, expected_dim: int) -> None:
    """
    Probe the embedder once at startup and compare with the vector field dimension.

    A mismatch raises DimensionMismatchError (fatal). An unreachable embedder
    is only logged: the per-request path will surface it as UpstreamError.
    """
    if embedder.dimension != expected_dim:
        raise DimensionMismatchError(
            f"Embedder configured for {embedder.dimension} dims, vector field has {expected_dim}"
        )
    try:
        probe = await embedder.embed(["diagnose"])
    except UpstreamError as e:
        if e.error_code == ErrorCode.DIMENSION_MISMATCH:
            raise DimensionMismatchError(e.message) from e
        logger.warning(f"Embedding probe failed: {e}")
        return
    logger.info(f"Embedding probe ok, dim={len(probe[0])}")
