# api/query_endpoints.py
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request

from ekb.api.dependencies import get_caller_id
from ekb.api.schemas import QueryRequest, QueryResponse
from ekb.api.streaming import sse_events, sse_response
from ekb.config import settings
from ekb.core.domain import RAGQueryRequest
from ekb.core.exceptions import KnowledgeBaseError, ValidationError
from ekb.services.factory import get_rag_service
from ekb.services.rag_query_service import RAGQueryService

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter(prefix="/api/v1/rag", tags=["rag"])


def to_domain_request(body: QueryRequest) -> RAGQueryRequest:
    """Apply HTTP defaults for unset or non-positive values."""
    return RAGQueryRequest(
        query=body.query,
        limit=body.limit if body.limit > 0 else settings.DEFAULT_QUERY_LIMIT,
        temperature=body.temperature if body.temperature > 0 else settings.DEFAULT_TEMPERATURE,
        max_tokens=body.max_tokens if body.max_tokens > 0 else settings.DEFAULT_MAX_TOKENS,
        session_id=body.session_id or "",
    )


@router.post("/query", response_model=QueryResponse)
async def query(
    body: QueryRequest,
    caller_id: str = Depends(get_caller_id),
    rag_service: RAGQueryService = Depends(get_rag_service)
) -> QueryResponse:
    started = time.monotonic()
    try:
        result = await rag_service.ask_sync(caller_id, to_domain_request(body))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except KnowledgeBaseError as e:
        logger.error(f"RAG ask failed: {e}")
        raise HTTPException(status_code=500, detail="rag ask failed")

    return QueryResponse(
        answer=result.answer,
        sources=result.sources,
        usage=result.usage,
        latency_ms=int((time.monotonic() - started) * 1000),
    )


@router.post("/query/stream")
async def query_stream(
    body: QueryRequest,
    request: Request,
    caller_id: str = Depends(get_caller_id),
    rag_service: RAGQueryService = Depends(get_rag_service)
):
    rag_request = to_domain_request(body)
    if not rag_request.query.strip():
        raise HTTPException(status_code=400, detail="query is empty")

    fragments = rag_service.ask_stream(caller_id, rag_request)
    return sse_response(sse_events(
        fragments,
        is_disconnected=request.is_disconnected,
        heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
    ))
