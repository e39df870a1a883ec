# infrastructure/message_queue.py
"""RabbitMQ client: durable work queue with a dead-letter exchange"""
import json
import logging
from typing import Any, Callable, Dict, Optional, Union

import pika

from ekb.config import settings
from ekb.core.exceptions import UpstreamError

logger = logging.getLogger(settings.LOGGER_NAME)

# (channel, method, properties, body) -> None
DeliveryCallback = Callable[[Any, Any, Any, bytes], None]


def dead_letter_names(queue: str) -> Dict[str, str]:
    return {"exchange": f"{queue}.dlx", "queue": f"{queue}.dlq"}


def declare_topology(channel: Any, queue: str) -> None:
    """
    Declare the DLX, the DLQ bound to it, and the main queue routed to the DLX.

    Messages rejected without requeue are re-published by the broker to
    `{queue}.dlx` with routing key `{queue}` and land in `{queue}.dlq`.
    """
    names = dead_letter_names(queue)
    channel.exchange_declare(exchange=names["exchange"], exchange_type="direct", durable=True)
    channel.queue_declare(queue=names["queue"], durable=True)
    channel.queue_bind(queue=names["queue"], exchange=names["exchange"], routing_key=queue)
    channel.queue_declare(
        queue=queue,
        durable=True,
        arguments={
            "x-dead-letter-exchange": names["exchange"],
            "x-dead-letter-routing-key": queue,
        },
    )


class RabbitMQClient:
    """
    Blocking pika connection owned by a single thread.

    `stop()` is the only method that may be called from another thread.
    """

    def __init__(self, url: str = settings.RABBITMQ_URL, queue: str = settings.RABBITMQ_QUEUE):
        self.url = url
        self.queue = queue
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Any = None

    def connect(self) -> None:
        if self._connection is not None and self._connection.is_open:
            return
        try:
            self._connection = pika.BlockingConnection(pika.URLParameters(self.url))
            self._channel = self._connection.channel()
            declare_topology(self._channel, self.queue)
        except pika.exceptions.AMQPError as e:
            self.close()
            raise UpstreamError(f"Failed to connect to RabbitMQ: {e}") from e
        logger.info(f"Connected to RabbitMQ queue '{self.queue}'")

    def publish(self, payload: Union[bytes, str, Dict[str, Any]]) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        self.connect()
        try:
            self._channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=body,
                properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
            )
        except pika.exceptions.AMQPError as e:
            raise UpstreamError(f"Failed to publish message: {e}") from e

    def consume(self, callback: DeliveryCallback, prefetch: int = settings.RABBITMQ_PREFETCH) -> None:
        """Block dispatching deliveries to `callback` with manual ack until stop()."""
        self.connect()
        # Bounds unacknowledged deliveries held by this consumer
        self._channel.basic_qos(prefetch_count=prefetch)
        self._channel.basic_consume(queue=self.queue, on_message_callback=callback, auto_ack=False)
        logger.info(f"Started RabbitMQ consumer (prefetch={prefetch})")
        try:
            self._channel.start_consuming()
        except pika.exceptions.AMQPError as e:
            raise UpstreamError(f"RabbitMQ consumer failed: {e}") from e

    def stop(self) -> None:
        connection = self._connection
        if connection is None or not connection.is_open:
            return
        connection.add_callback_threadsafe(self._channel.stop_consuming)

    def close(self) -> None:
        try:
            if self._connection is not None and self._connection.is_open:
                self._connection.close()
        except pika.exceptions.AMQPError as e:
            logger.warning(f"Error closing RabbitMQ connection: {e}")
        finally:
            self._connection = None
            self._channel = None
