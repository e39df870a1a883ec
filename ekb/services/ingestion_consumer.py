# services/ingestion_consumer.py
"""Queue-driven ingestion: one delivery -> one process_document run -> ack or dead-letter"""
import asyncio
import concurrent.futures
import functools
import logging
import threading
from typing import Any, Optional

import pika
from pydantic import BaseModel, ValidationError as PydanticValidationError

from ekb.config import settings
from ekb.core.exceptions import UpstreamError
from ekb.infrastructure.message_queue import RabbitMQClient
from ekb.services.vector_service import VectorPipelineService

logger = logging.getLogger(settings.LOGGER_NAME)


class IngestionMessage(BaseModel):
    document_id: str
    content: str
    chunk_size: int = 0


class IngestionConsumer:
    """
    Consumes document messages on a dedicated thread.

    Every delivery is settled exactly once: ack after the pipeline succeeds,
    nack without requeue (dead-letter) on a bad payload, a pipeline error or
    a timeout. Pipeline coroutines run on the application event loop so that
    the database engine and HTTP clients are only ever used from one loop;
    without a loop they run on a small worker pool sized by the prefetch.
    """

    def __init__(
        self,
        client: RabbitMQClient,
        pipeline: VectorPipelineService,
        prefetch: int = settings.RABBITMQ_PREFETCH,
        timeout_seconds: float = settings.INGESTION_TIMEOUT_SECONDS
    ):
        self.client = client
        self.pipeline = pipeline
        self.prefetch = prefetch
        self.timeout_seconds = timeout_seconds
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def _submit(self, message: IngestionMessage) -> concurrent.futures.Future:
        """Start the pipeline off the pika thread; the deadline is enforced where it runs."""
        coro = asyncio.wait_for(
            self.pipeline.process_document(message.document_id, message.content, message.chunk_size),
            self.timeout_seconds,
        )
        if self._loop is not None:
            return asyncio.run_coroutine_threadsafe(coro, self._loop)
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=max(1, self.prefetch), thread_name_prefix="ingestion-worker"
            )
        return self._executor.submit(asyncio.run, coro)

    def _settle(self, channel: Any, tag: int, ack: bool) -> None:
        """Hand the ack/nack back to the connection's own thread."""
        if ack:
            action = functools.partial(channel.basic_ack, delivery_tag=tag)
        else:
            action = functools.partial(channel.basic_nack, delivery_tag=tag, requeue=False)
        try:
            channel.connection.add_callback_threadsafe(action)
        except pika.exceptions.AMQPError as e:
            # The broker redelivers unsettled messages once the connection is gone
            logger.warning(f"Could not settle delivery {tag}: {e}")

    def _on_pipeline_done(self, channel: Any, tag: int, document_id: str,
                          future: concurrent.futures.Future) -> None:
        if future.cancelled():
            logger.error(f"Processing document {document_id} was cancelled, dead-lettering")
            self._settle(channel, tag, ack=False)
            return
        error = future.exception()
        if isinstance(error, (asyncio.TimeoutError, concurrent.futures.TimeoutError)):
            logger.error(f"Processing document {document_id} timed out "
                         f"after {self.timeout_seconds}s, dead-lettering")
            self._settle(channel, tag, ack=False)
        elif error is not None:
            logger.error(f"Failed to process document {document_id}: {error}")
            self._settle(channel, tag, ack=False)
        else:
            logger.info(f"Successfully processed document {document_id}")
            self._settle(channel, tag, ack=True)

    def handle_delivery(self, channel: Any, method: Any, properties: Any,
                        body: bytes) -> Optional[concurrent.futures.Future]:
        """
        Called on the pika thread; returns as soon as the pipeline is scheduled.

        Settlement is posted back with `add_callback_threadsafe` when the run
        finishes, so the connection keeps servicing heartbeats meanwhile.
        """
        tag = method.delivery_tag
        try:
            message = IngestionMessage.model_validate_json(body)
        except PydanticValidationError as e:
            logger.error(f"Failed to unmarshal message, dead-lettering: {e}")
            channel.basic_nack(delivery_tag=tag, requeue=False)
            return None

        logger.info(f"Processing document {message.document_id} from queue")
        try:
            future = self._submit(message)
        except RuntimeError as e:
            logger.error(f"Could not schedule document {message.document_id}: {e}")
            channel.basic_nack(delivery_tag=tag, requeue=False)
            return None
        future.add_done_callback(
            functools.partial(self._on_pipeline_done, channel, tag, message.document_id)
        )
        return future

    def _consume(self) -> None:
        try:
            self.client.consume(self.handle_delivery, prefetch=self.prefetch)
        except UpstreamError as e:
            logger.error(f"Ingestion consumer stopped: {e}")
        finally:
            self.client.close()

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._loop = loop
        self._thread = threading.Thread(target=self._consume, name="ingestion-consumer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.client.stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
