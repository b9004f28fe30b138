"""RabbitMQ event publisher.

Dependencies:
    - pika
"""

from __future__ import annotations

import json
import logging
import threading
import time

import pika
from pika.exceptions import AMQPError

from storage_api.infra.events.publisher import EventPublishError, ObjectUploadedEvent

logger = logging.getLogger("events.rabbitmq")


class RabbitMQEventPublisher:
    """Publishes events as persistent JSON messages on a topic exchange.

    Each thread keeps its own blocking connection (pika connections are not
    thread-safe) and each publish uses a fresh channel. Transient broker
    failures are retried a bounded number of times before giving up.
    """

    def __init__(
        self,
        *,
        url: str,
        exchange: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._parameters = pika.URLParameters(url)
        self._exchange = exchange
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._local = threading.local()

    def _connection(self) -> pika.BlockingConnection:
        connection = getattr(self._local, "connection", None)
        if connection is None or connection.is_closed:
            logger.info(
                "rabbitmq_connect thread=%s", threading.get_ident()
            )
            connection = pika.BlockingConnection(self._parameters)
            self._local.connection = connection
        return connection

    def _invalidate(self) -> None:
        connection = getattr(self._local, "connection", None)
        self._local.connection = None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPError:
                logger.debug("rabbitmq_close_failed", exc_info=True)

    def publish(self, event: ObjectUploadedEvent) -> None:
        body = json.dumps(event.to_payload(), default=str)
        for attempt in range(1, self._max_retries + 1):
            try:
                with self._connection().channel() as channel:
                    channel.exchange_declare(
                        exchange=self._exchange,
                        exchange_type="topic",
                        durable=True,
                    )
                    channel.basic_publish(
                        exchange=self._exchange,
                        routing_key=event.name,
                        body=body,
                        properties=pika.BasicProperties(
                            content_type="application/json",
                            delivery_mode=pika.DeliveryMode.Persistent,
                        ),
                    )
                logger.info(
                    "event_published exchange=%s routing_key=%s attempt=%s",
                    self._exchange,
                    event.name,
                    attempt,
                )
                return
            except (AMQPError, OSError) as exc:
                logger.warning(
                    "event_publish_attempt_failed exchange=%s attempt=%s error=%s",
                    self._exchange,
                    attempt,
                    exc,
                )
                self._invalidate()
                if attempt == self._max_retries:
                    raise EventPublishError(
                        f"Failed to publish {event.name} after {attempt} attempts"
                    ) from exc
                time.sleep(self._retry_delay)

    def close(self) -> None:
        self._invalidate()
