# api/streaming.py
"""Server-sent events delivery for streamed answers"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

from fastapi.responses import StreamingResponse

from ekb.config import settings
from ekb.core.exceptions import KnowledgeBaseError

logger = logging.getLogger(settings.LOGGER_NAME)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

PING_EVENT = "event: ping\ndata: heartbeat\n\n"

_DONE = "done"
_DATA = "data"
_ERROR = "error"


def format_data(fragment: str) -> str:
    """One SSE message; embedded newlines become continuation data lines."""
    lines = fragment.split("\n")
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def format_error(message: str) -> str:
    return f"event: error\n{format_data(message)}"


async def _watch_disconnect(is_disconnected: Callable[[], Awaitable[bool]], poll_interval: float) -> None:
    while not await is_disconnected():
        await asyncio.sleep(poll_interval)


async def sse_events(
    fragments: AsyncIterator[str],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    heartbeat_interval: float = settings.HEARTBEAT_INTERVAL_SECONDS,
    poll_interval: float = 0.5
) -> AsyncIterator[str]:
    """
    Relay fragments as SSE frames with heartbeats until the stream ends.

    A producer task drains `fragments` into a queue; each step waits on the
    queue, the heartbeat timer and the disconnect watcher at once. On
    disconnect nothing more is written and the producer is cancelled, which
    closes the upstream model stream.
    """
    queue: "asyncio.Queue[Tuple[str, str]]" = asyncio.Queue()

    async def produce() -> None:
        try:
            async for fragment in fragments:
                await queue.put((_DATA, fragment))
        except asyncio.CancelledError:
            raise
        except KnowledgeBaseError as e:
            logger.error(f"Stream failed: {e}")
            await queue.put((_ERROR, e.message))
            return
        except Exception as e:
            logger.error(f"Stream failed: {e}", exc_info=True)
            await queue.put((_ERROR, "rag stream failed"))
            return
        await queue.put((_DONE, ""))

    loop = asyncio.get_running_loop()
    producer = asyncio.create_task(produce())
    watcher = (asyncio.create_task(_watch_disconnect(is_disconnected, poll_interval))
               if is_disconnected is not None else None)
    next_item: Optional[asyncio.Task] = None
    # Heartbeats tick on a fixed schedule regardless of fragment traffic
    next_ping = loop.time() + heartbeat_interval
    try:
        while True:
            if next_item is None:
                next_item = asyncio.create_task(queue.get())
            waiters = {next_item} if watcher is None else {next_item, watcher}
            done, _ = await asyncio.wait(waiters, timeout=max(0.0, next_ping - loop.time()),
                                         return_when=asyncio.FIRST_COMPLETED)

            if watcher is not None and watcher in done:
                logger.info("Client disconnected, stopping stream")
                return
            now = loop.time()
            if now >= next_ping:
                yield PING_EVENT
                # Missed ticks are dropped, not replayed
                while next_ping <= now:
                    next_ping += heartbeat_interval
            if next_item not in done:
                continue

            kind, payload = next_item.result()
            next_item = None
            if kind == _DATA:
                yield format_data(payload)
            elif kind == _ERROR:
                yield format_error(payload)
                return
            else:
                return
    finally:
        for task in (next_item, watcher, producer):
            if task is not None and not task.done():
                task.cancel()
        for task in (next_item, watcher, producer):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass


def sse_response(events: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(events, media_type="text/event-stream", headers=SSE_HEADERS)
