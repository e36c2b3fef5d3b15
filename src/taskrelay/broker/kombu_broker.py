"""RabbitMQ adapter built on kombu.

kombu is blocking, so every call runs in a worker thread via
``asyncio.to_thread``. A per-broker lock keeps calls on the connection
strictly sequential; a dispatcher owns its broker, the gateway shares one
across requests.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from typing import Any

from kombu import Connection, Consumer, Exchange, Producer, Queue
from kombu.exceptions import OperationalError
from kombu.utils.url import maybe_sanitize_url

from taskrelay.broker.base import Broker, Delivery, parse_retry_count
from taskrelay.config.constants import RETRY_HEADER
from taskrelay.config.models import BrokerConfig
from taskrelay.tasks.errors import BrokerConnectionError
from taskrelay.tasks.models import Envelope

logger = logging.getLogger("taskrelay.broker.kombu")

PERSISTENT = 2  # AMQP delivery_mode


class KombuBroker(Broker):
    """Work queue with a fanout dead-letter exchange.

    Topology::

        tasks (durable, x-dead-letter-exchange=dlx) --reject--> dlx (fanout) --> tasks.dlq
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        role: str = "taskrelay",
        connection_factory: Any = Connection,
    ) -> None:
        self._config = config
        self._role = role
        self._connection_factory = connection_factory
        self._lock = asyncio.Lock()

        self._connection = None
        self._channel = None
        self._producer: Producer | None = None
        self._consumer: Consumer | None = None
        self._work_queue: Queue | None = None
        self._buffer: deque = deque()

        dead_letter_exchange = Exchange(
            config.dead_letter_exchange, type="fanout", durable=True
        )
        self._dead_letter_decl = Queue(
            config.dead_letter_queue,
            exchange=dead_letter_exchange,
            routing_key="",
            durable=True,
        )
        # Bound to the default exchange; routing key is the queue name.
        self._work_decl = Queue(
            config.queue,
            routing_key=config.queue,
            durable=True,
            queue_arguments={"x-dead-letter-exchange": config.dead_letter_exchange},
        )

    @property
    def url(self) -> str:
        """Broker URL with the password masked, for logs."""
        return maybe_sanitize_url(self._config.url)

    @property
    def connection_name(self) -> str:
        return f"{self._role}-{os.getpid()}"

    # -- Broker interface ------------------------------------------------------

    async def connect(self) -> None:
        await self._call(self._connect_sync)

    async def close(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._close_sync)

    async def publish(self, envelope: Envelope, retry_count: int = 0) -> None:
        await self._call(self._publish_sync, envelope.encode(), {RETRY_HEADER: retry_count})

    async def receive(self, timeout: float) -> Delivery | None:
        return await self._call(self._receive_sync, timeout)

    async def ack(self, delivery: Delivery) -> None:
        await self._call(delivery.handle.ack)

    async def retry(self, delivery: Delivery) -> None:
        await self._call(self._retry_sync, delivery)

    async def reject(self, delivery: Delivery) -> None:
        await self._call(delivery.handle.reject, False)

    async def queue_length(self) -> int:
        return await self._call(self._queue_length_sync)

    # -- Internal helpers ------------------------------------------------------

    async def _call(self, fn, *args):
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except self._connection_errors() as exc:
                raise BrokerConnectionError(str(exc) or type(exc).__name__) from exc

    def _connection_errors(self) -> tuple[type[BaseException], ...]:
        errors: tuple[type[BaseException], ...] = (OperationalError, ConnectionError)
        if self._connection is not None:
            errors += tuple(self._connection.connection_errors)
            errors += tuple(self._connection.channel_errors)
        return errors

    def _connect_sync(self) -> None:
        self._close_sync()
        connection = self._connection_factory(
            self._config.url,
            transport_options={
                "client_properties": {"connection_name": self.connection_name},
            },
        )
        self._connection = connection
        connection.connect()

        channel = connection.channel()
        self._dead_letter_decl.bind(channel).declare()
        self._work_queue = self._work_decl.bind(channel)
        self._work_queue.declare()

        self._channel = channel
        self._producer = Producer(channel)
        logger.debug("Declared %s and %s", self._config.queue, self._config.dead_letter_queue)

    def _close_sync(self) -> None:
        # Unacked buffered messages are redelivered by the broker once we go.
        self._buffer.clear()
        if self._consumer is not None:
            try:
                self._consumer.cancel()
            except Exception:
                logger.debug("Consumer cancel failed during close", exc_info=True)
        if self._connection is not None:
            self._connection.release()
        self._connection = None
        self._channel = None
        self._producer = None
        self._consumer = None
        self._work_queue = None

    def _require_connection(self) -> None:
        if self._connection is None:
            raise BrokerConnectionError("Broker is not connected")

    def _publish_sync(self, body: bytes, headers: dict[str, Any]) -> None:
        self._require_connection()
        self._producer.publish(
            body,
            exchange="",
            routing_key=self._config.queue,
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=PERSISTENT,
            headers=headers,
        )

    def _retry_sync(self, delivery: Delivery) -> None:
        delivery.handle.ack()
        headers = {**delivery.headers, RETRY_HEADER: delivery.retry_count + 1}
        self._publish_sync(delivery.body, headers)

    def _ensure_consumer(self) -> None:
        if self._consumer is not None:
            return
        consumer = Consumer(
            self._channel,
            queues=[self._work_queue],
            no_ack=False,
            on_message=self._buffer.append,
        )
        # One unacknowledged message per dispatcher.
        consumer.qos(prefetch_count=1)
        consumer.consume()
        self._consumer = consumer

    def _receive_sync(self, timeout: float) -> Delivery | None:
        self._require_connection()
        self._ensure_consumer()
        if not self._buffer:
            try:
                self._connection.drain_events(timeout=timeout)
            except TimeoutError:
                return None
        if not self._buffer:
            return None

        message = self._buffer.popleft()
        body = message.body if isinstance(message.body, bytes) else message.body.encode("utf-8")
        headers = dict(message.headers or {})
        try:
            envelope = Envelope.decode(body)
        except ValueError:
            logger.error("Dead-lettering malformed message: %r", body[:200])
            message.reject(requeue=False)
            return None

        return Delivery(
            envelope=envelope,
            body=body,
            retry_count=parse_retry_count(headers, RETRY_HEADER),
            headers=headers,
            handle=message,
        )

    def _queue_length_sync(self) -> int:
        self._require_connection()
        declared = self._work_queue.queue_declare(passive=True)
        return int(declared.message_count)
