# services/factory.py
from dataclasses import dataclass
from typing import Optional

import chromadb
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ekb.config import Settings, settings
from ekb.core.chunking import ChunkEngine
from ekb.core.domain import VectorType
from ekb.core.interfaces import (
    ICache, IChunkRepository, IChunkSearcher, IConversationMemory,
    IEmbeddingService, ILLMService, IVectorStore
)
from ekb.database.session import create_engine_and_sessionmaker
from ekb.infrastructure.cache import InMemoryTTLCache
from ekb.infrastructure.embedding_services import HTTPEmbeddingService, SentenceTransformerEmbedding
from ekb.infrastructure.llm_service import LLMService
from ekb.infrastructure.message_queue import RabbitMQClient
from ekb.infrastructure.remote_search import RemoteChunkSearcher
from ekb.infrastructure.repositories import SQLChunkRepository, SQLConversationMemory
from ekb.infrastructure.vector_stores import ChromaDBVectorStore
from ekb.services.ingestion_consumer import IngestionConsumer
from ekb.services.rag_query_service import RAGQueryService
from ekb.services.vector_service import VectorPipelineService


@dataclass
class ServiceContainer:
    """Process-wide components, built once at startup and shared by all requests."""
    engine: AsyncEngine
    session_factory: async_sessionmaker
    cache: ICache
    embedding_service: IEmbeddingService
    vector_store: IVectorStore
    chunk_repo: IChunkRepository
    memory: IConversationMemory
    vector_service: VectorPipelineService
    searcher: IChunkSearcher
    llm: ILLMService
    rag_service: RAGQueryService
    consumer: Optional[IngestionConsumer] = None


# Provider functions for each component
def get_embedding_service(config: Settings = settings) -> IEmbeddingService:
    """Create embedding service based on configuration."""
    if config.EMBEDDING_PROVIDER == "sentence_transformers":
        return SentenceTransformerEmbedding(config.EMBEDDING_MODEL_NAME, config.VECTOR_DIM)
    if config.EMBEDDING_PROVIDER == "http":
        return HTTPEmbeddingService(
            base_url=config.EMBEDDING_BASE_URL,
            model=config.EMBEDDING_MODEL_NAME,
            api_key=config.EMBEDDING_API_KEY,
            dimension=config.VECTOR_DIM,
            timeout=config.REQUEST_TIMEOUT,
        )
    raise ValueError(f"Unknown embedding provider: {config.EMBEDDING_PROVIDER}")


def get_vector_store(embedding_service: IEmbeddingService, config: Settings = settings) -> IVectorStore:
    """Create vector store based on configuration."""
    vector_type = VectorType(config.VECTOR_TYPE)
    if config.VECTOR_STORE_TYPE == "chromadb":
        client = chromadb.PersistentClient(path=config.VECTOR_DB_PATH)
        return ChromaDBVectorStore(client, embedding_service, config.VECTOR_COLLECTION, vector_type)
    if config.VECTOR_STORE_TYPE == "milvus":
        from ekb.infrastructure.milvus_store import MilvusVectorStore
        return MilvusVectorStore(
            embedding_service,
            collection_name=config.VECTOR_COLLECTION,
            vector_field=config.VECTOR_FIELD,
            dim=config.VECTOR_DIM,
            vector_type=vector_type,
            host=config.MILVUS_HOST,
            port=config.MILVUS_PORT,
            user=config.MILVUS_USER,
            password=config.MILVUS_PASSWORD,
        )
    raise ValueError(f"Unknown vector store type: {config.VECTOR_STORE_TYPE}")


def build_container(
    config: Settings = settings,
    embedding_service: Optional[IEmbeddingService] = None,
    vector_store: Optional[IVectorStore] = None,
    llm: Optional[ILLMService] = None
) -> ServiceContainer:
    """
    Wire every component from configuration.

    Explicit arguments replace the configured implementation, which is how
    tests inject fakes.
    """
    engine, session_factory = create_engine_and_sessionmaker(config.DATABASE_URL)
    cache = InMemoryTTLCache(max_entries=config.CACHE_MAX_ENTRIES)
    embedding_service = embedding_service or get_embedding_service(config)
    vector_store = vector_store or get_vector_store(embedding_service, config)
    chunk_repo = SQLChunkRepository(session_factory)
    memory = SQLConversationMemory(session_factory, config.CONVERSATION_TTL_SECONDS)

    vector_service = VectorPipelineService(
        chunk_repo=chunk_repo,
        vector_store=vector_store,
        embedding_service=embedding_service,
        cache=cache,
        chunk_engine=ChunkEngine(config.DEFAULT_CHUNK_SIZE),
        search_cache_ttl=config.SEARCH_CACHE_TTL_SECONDS,
        replace_existing=config.INGEST_REPLACE_EXISTING,
    )
    searcher: IChunkSearcher = (
        RemoteChunkSearcher(config.VECTOR_SERVICE_URL, config.SERVICE_NAME, config.REQUEST_TIMEOUT)
        if config.VECTOR_SERVICE_URL else vector_service
    )
    llm = llm or LLMService(config.LLM_BASE_URL, config.LLM_MODEL_NAME, config.REQUEST_TIMEOUT)
    rag_service = RAGQueryService(
        searcher=searcher,
        llm=llm,
        memory=memory,
        cache=cache,
        answer_cache_ttl=config.ANSWER_CACHE_TTL_SECONDS,
    )

    consumer = None
    if config.INGESTION_ENABLED:
        consumer = IngestionConsumer(
            RabbitMQClient(config.RABBITMQ_URL, config.RABBITMQ_QUEUE),
            vector_service,
            prefetch=config.RABBITMQ_PREFETCH,
            timeout_seconds=config.INGESTION_TIMEOUT_SECONDS,
        )

    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        embedding_service=embedding_service,
        vector_store=vector_store,
        chunk_repo=chunk_repo,
        memory=memory,
        vector_service=vector_service,
        searcher=searcher,
        llm=llm,
        rag_service=rag_service,
        consumer=consumer,
    )


# Request-scoped providers used with FastAPI Depends
def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_vector_service(request: Request) -> VectorPipelineService:
    return get_container(request).vector_service


def get_rag_service(request: Request) -> RAGQueryService:
    return get_container(request).rag_service
