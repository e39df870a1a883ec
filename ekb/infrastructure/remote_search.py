# infrastructure/remote_search.py
"""Chunk search delegated to a vector service running in another process"""
import asyncio
import logging
from typing import Any, Dict, List

import requests

from ekb.config import settings
from ekb.core.domain import ScoredChunk, TextChunk
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import IChunkSearcher

logger = logging.getLogger(settings.LOGGER_NAME)


class RemoteChunkSearcher(IChunkSearcher):
    """
    Calls POST {base_url}/api/v1/vectors/search/scored.

    The vector service sits behind the same gateway trust boundary, so the
    call carries this service's name as the caller identity.
    """

    def __init__(self, base_url: str, caller_id: str = settings.SERVICE_NAME,
                 timeout: int = settings.REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.caller_id = caller_id
        self.timeout = timeout

    @staticmethod
    def _to_chunk(item: Dict[str, Any]) -> TextChunk:
        return TextChunk(
            id=str(item["id"]),
            document_id=str(item["document_id"]),
            content=item.get("content", ""),
            chunk_index=int(item.get("chunk_index", 0)),
            start_pos=int(item.get("start_pos", 0)),
            end_pos=int(item.get("end_pos", 0)),
            word_count=int(item.get("word_count", 0)),
        )

    def _search(self, query: str, limit: int) -> List[ScoredChunk]:
        try:
            response = requests.post(
                f"{self.base_url}/api/v1/vectors/search/scored",
                json={"query": query, "limit": limit},
                headers={"X-User-ID": self.caller_id},
                timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout as e:
            raise UpstreamError(f"Vector service timed out after {self.timeout} seconds") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"Vector service call failed: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Vector service returned invalid JSON: {e}") from e

        try:
            results = [
                ScoredChunk(chunk=self._to_chunk(item), score=float(item.get("score", 0.0)))
                for item in payload.get("chunks", [])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed search response: {e}") from e
        results = results[:limit] if limit > 0 else results
        logger.debug(f"Remote search returned {len(results)} chunks, "
                     f"scores={[round(r.score, 4) for r in results]}")
        return results

    async def search(self, query: str, limit: int) -> List[ScoredChunk]:
        """Ordered hits with the score the vector service reported for each."""
        return await asyncio.to_thread(self._search, query, limit)

    async def search_similar_chunks(self, query: str, limit: int) -> List[TextChunk]:
        return [scored.chunk for scored in await self.search(query, limit)]
