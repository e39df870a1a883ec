# infrastructure/llm_service.py
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import requests

from ekb.config import settings
from ekb.core.domain import ConversationTurn, LLMResponse
from ekb.core.exceptions import UpstreamError
from ekb.core.interfaces import ILLMService

logger = logging.getLogger(settings.LOGGER_NAME)

_END_OF_STREAM = object()


class LLMService(ILLMService):
    """A client for a local chat model API (Ollama /api/chat)."""

    def __init__(self, base_url: str = settings.LLM_BASE_URL, model: str = settings.LLM_MODEL_NAME,
                 timeout: int = settings.REQUEST_TIMEOUT):
        """
        Initializes the LLMService.

        Args:
            base_url: The base URL of the LLM API.
            model: The name of the model to use.
            timeout: The request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _payload(self, messages: List[ConversationTurn], temperature: float,
                 max_tokens: int, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "stream": stream,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

    def _post(self, payload: Dict[str, Any], stream: bool) -> requests.Response:
        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                json=payload,
                timeout=self.timeout,
                stream=stream
            )
            response.raise_for_status()  # Raises an HTTPError for bad responses (4xx or 5xx)
            return response
        except requests.exceptions.Timeout as e:
            logger.error(f"LLM request timed out after {self.timeout} seconds.")
            raise UpstreamError("LLM request timed out") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Cannot connect to LLM at {self.base_url}. Is the service running?")
            raise UpstreamError("Cannot connect to LLM service") from e
        except requests.exceptions.HTTPError as e:
            logger.error(f"LLM service returned an error: {e.response.status_code} {e.response.text}")
            raise UpstreamError(f"LLM error: {e.response.status_code}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"LLM request failed: {e}") from e

    @staticmethod
    def _usage(result: Dict[str, Any]) -> Dict[str, int]:
        prompt_tokens = int(result.get("prompt_eval_count") or 0)
        completion_tokens = int(result.get("eval_count") or 0)
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    def _generate_sync(self, payload: Dict[str, Any]) -> LLMResponse:
        logger.info(f"Sending chat request to LLM model '{self.model}'...")
        response = self._post(payload, stream=False)
        try:
            result = response.json()
            content = result["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("LLM response was empty or malformed.")
            raise UpstreamError(f"Malformed LLM response: {e}") from e
        logger.info("Successfully received response from LLM.")
        return LLMResponse(content=content, usage=self._usage(result))

    async def generate(self, messages: List[ConversationTurn], temperature: float,
                       max_tokens: int) -> LLMResponse:
        payload = self._payload(messages, temperature, max_tokens, stream=False)
        return await asyncio.to_thread(self._generate_sync, payload)

    @staticmethod
    def _next_fragment(lines: Iterator[bytes]) -> Any:
        """Read NDJSON lines until one carries content or the stream is done."""
        for line in lines:
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError as e:
                raise UpstreamError(f"Malformed stream event: {e}") from e
            if event.get("error"):
                raise UpstreamError(f"LLM stream error: {event['error']}")
            content = (event.get("message") or {}).get("content", "")
            if content:
                return content
            if event.get("done"):
                return _END_OF_STREAM
        return _END_OF_STREAM

    async def stream(self, messages: List[ConversationTurn], temperature: float,
                     max_tokens: int) -> AsyncIterator[str]:
        payload = self._payload(messages, temperature, max_tokens, stream=True)
        response: Optional[requests.Response] = await asyncio.to_thread(self._post, payload, True)
        try:
            lines = response.iter_lines()
            while True:
                try:
                    fragment = await asyncio.to_thread(self._next_fragment, lines)
                except requests.exceptions.RequestException as e:
                    raise UpstreamError(f"LLM stream interrupted: {e}") from e
                if fragment is _END_OF_STREAM:
                    break
                yield fragment
        finally:
            # Also reached when the consumer closes the generator early
            response.close()
