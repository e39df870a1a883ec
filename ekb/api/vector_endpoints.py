# api/vector_endpoints.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from ekb.api.dependencies import get_caller_id
from ekb.api.schemas import (
    ChunkRequest, ChunkResponse, DeleteResponse, DocumentChunksResponse,
    ScoredSearchResponse, SearchRequest, SearchResponse
)
from ekb.config import settings
from ekb.core.exceptions import KnowledgeBaseError, ValidationError
from ekb.services.factory import get_vector_service
from ekb.services.vector_service import VectorPipelineService
from ekb.utils.common import validate_document_id

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter(
    prefix="/api/v1/vectors",
    tags=["vectors"],
    dependencies=[Depends(get_caller_id)]
)


def _require_document_id(document_id: str) -> None:
    if not validate_document_id(document_id):
        raise HTTPException(status_code=422, detail="Invalid document ID format")


@router.post("/chunk", response_model=ChunkResponse)
async def chunk_document(
    body: ChunkRequest,
    vector_service: VectorPipelineService = Depends(get_vector_service)
) -> ChunkResponse:
    _require_document_id(body.document_id)
    try:
        chunks = await vector_service.process_document(body.document_id, body.content, body.chunk_size)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except KnowledgeBaseError as e:
        logger.error(f"Chunking failed for {body.document_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process document")

    return ChunkResponse(
        document_id=body.document_id,
        chunks=[chunk.to_dict() for chunk in chunks],
        count=len(chunks),
        message="Document chunked and embedded successfully"
    )


@router.post("/search", response_model=SearchResponse)
async def search(
    body: SearchRequest,
    vector_service: VectorPipelineService = Depends(get_vector_service)
) -> SearchResponse:
    try:
        chunks = await vector_service.search_similar_chunks(body.query, body.limit)
    except KnowledgeBaseError as e:
        logger.error(f"Search failed: {e}")
        raise HTTPException(status_code=500, detail="Search failed")

    return SearchResponse(
        query=body.query,
        chunks=[chunk.to_dict() for chunk in chunks],
        count=len(chunks)
    )


@router.post("/search/scored", response_model=ScoredSearchResponse)
async def search_scored(
    body: SearchRequest,
    vector_service: VectorPipelineService = Depends(get_vector_service)
) -> ScoredSearchResponse:
    try:
        results = await vector_service.search(body.query, body.limit)
    except KnowledgeBaseError as e:
        logger.error(f"Scored search failed: {e}")
        raise HTTPException(status_code=500, detail="Search failed")

    return ScoredSearchResponse(chunks=[scored.to_dict() for scored in results])


@router.get("/documents/{document_id}/chunks", response_model=DocumentChunksResponse)
async def get_document_chunks(
    document_id: str,
    vector_service: VectorPipelineService = Depends(get_vector_service)
) -> DocumentChunksResponse:
    _require_document_id(document_id)
    try:
        chunks = await vector_service.get_document_chunks(document_id)
    except KnowledgeBaseError as e:
        logger.error(f"Failed to fetch chunks for {document_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch document chunks")

    return DocumentChunksResponse(
        document_id=document_id,
        chunks=[chunk.to_dict() for chunk in chunks],
        count=len(chunks)
    )


@router.delete("/documents/{document_id}/chunks", response_model=DeleteResponse)
async def delete_document_chunks(
    document_id: str,
    vector_service: VectorPipelineService = Depends(get_vector_service)
) -> DeleteResponse:
    _require_document_id(document_id)
    try:
        await vector_service.delete_document_chunks(document_id)
    except KnowledgeBaseError as e:
        logger.error(f"Failed to delete chunks for {document_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete document chunks")

    return DeleteResponse(document_id=document_id, message="Document chunks deleted successfully")
