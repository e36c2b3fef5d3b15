"""Dispatcher — consumes envelopes one at a time and runs them through their handler.

Per delivery attempt::

    RECEIVED -> BROADCAST_STARTED -> EXECUTING -> SUCCEEDED | EXECUTION_FAILED
    SUCCEEDED                                  -> ack
    EXECUTION_FAILED, retry_count < max_retries  -> ack + re-enqueue(retry_count + 1)
    EXECUTION_FAILED, retry_count >= max_retries -> reject (dead-letter)

Retries are immediate; there is no backoff between attempts.
"""

from __future__ import annotations

import inspect
import json
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from taskrelay.broker.base import connect_with_retry
from taskrelay.config.constants import MAX_RETRIES
from taskrelay.tasks.errors import BrokerConnectionError, HandlerExecutionFailure, HandlerNotFound
from taskrelay.tasks.models import BroadcastEvent, TaskStatus, now_ms

if TYPE_CHECKING:
    from taskrelay.broker.base import Broker, Delivery
    from taskrelay.handlers.registry import HandlerRegistry
    from taskrelay.tasks.store import StatusStore

logger = logging.getLogger("taskrelay.core.dispatcher")


class AttemptState(StrEnum):
    RECEIVED = "received"
    BROADCAST_STARTED = "broadcast_started"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    EXECUTION_FAILED = "execution_failed"
    DONE = "done"


class DeliveryOutcome(StrEnum):
    """How a delivery attempt was settled with the broker."""

    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class Dispatcher:
    """A single-message-at-a-time worker bound to one broker connection.

    Handler failures are turned into ``failed`` records, never raised.
    Status writes and broadcasts are best-effort. A lost broker connection
    abandons the current delivery (the broker redelivers it) and reconnects;
    only running out of reconnect attempts ends ``run()``.
    """

    def __init__(
        self,
        broker: Broker,
        store: StatusStore,
        registry: HandlerRegistry,
        *,
        worker_id: str,
        max_retries: int = MAX_RETRIES,
        receive_timeout: float = 1.0,
        reconnect_attempts: int = 10,
        reconnect_delay: float = 5.0,
    ) -> None:
        self._broker = broker
        self._store = store
        self._registry = registry
        self.worker_id = worker_id
        self.max_retries = max_retries
        self._receive_timeout = receive_timeout
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._running = False
        self._stop_requested = False
        self.processed = 0

    # -- Lifecycle -------------------------------------------------------------

    async def run(self) -> None:
        """Receive and process deliveries until ``stop()`` is called."""
        self._running = True
        logger.info("Dispatcher %s waiting for tasks", self.worker_id)
        try:
            while not self._stop_requested:
                try:
                    delivery = await self._broker.receive(self._receive_timeout)
                    if delivery is None:
                        continue
                    await self.process(delivery)
                except BrokerConnectionError as exc:
                    logger.error("Dispatcher %s lost its broker connection: %s", self.worker_id, exc)
                    await connect_with_retry(
                        self._broker,
                        attempts=self._reconnect_attempts,
                        delay=self._reconnect_delay,
                        url=getattr(self._broker, "url", ""),
                    )
        finally:
            self._running = False
        logger.info("Dispatcher %s stopped after %d deliveries", self.worker_id, self.processed)

    def stop(self) -> None:
        """Finish the current delivery, then leave ``run()``.

        Takes effect even if ``run()`` has not started yet.
        """
        self._stop_requested = True

    @property
    def running(self) -> bool:
        return self._running

    # -- Delivery handling -----------------------------------------------------

    async def process(self, delivery: Delivery) -> DeliveryOutcome:
        """Run one delivery attempt through the state machine."""
        envelope = delivery.envelope
        _advance(envelope.id, AttemptState.RECEIVED)

        started_at = now_ms()
        await self._record(
            envelope.id,
            {
                "type": envelope.type,
                "status": TaskStatus.STARTED.value,
                "timestamp": started_at,
                "workerId": self.worker_id,
            },
        )
        await self._broadcast(
            BroadcastEvent(
                id=envelope.id,
                type=envelope.type,
                status=TaskStatus.STARTED,
                timestamp=started_at,
                worker_id=self.worker_id,
            )
        )
        _advance(envelope.id, AttemptState.BROADCAST_STARTED)

        _advance(envelope.id, AttemptState.EXECUTING)
        status, result = await self._execute(delivery)
        state = _advance(
            envelope.id,
            AttemptState.SUCCEEDED if status is TaskStatus.COMPLETED
            else AttemptState.EXECUTION_FAILED,
        )

        finished_at = now_ms()
        await self._record(
            envelope.id,
            {
                "status": status.value,
                "result": json.dumps(result, default=str),
                "timestamp": finished_at,
                "workerId": self.worker_id,
            },
        )
        await self._broadcast(
            BroadcastEvent(
                id=envelope.id,
                type=envelope.type,
                status=status,
                timestamp=finished_at,
                worker_id=self.worker_id,
                result=result,
            )
        )

        outcome = await self._settle(delivery, state)
        _advance(envelope.id, AttemptState.DONE)
        self.processed += 1
        logger.info(
            "Task %s (%s) %s on attempt %d: %s",
            envelope.id, envelope.type, status, delivery.retry_count + 1, outcome,
        )

        await self._report_queue_length()
        return outcome

    async def _execute(self, delivery: Delivery) -> tuple[TaskStatus, Any]:
        envelope = delivery.envelope
        try:
            handler = self._registry.get(envelope.type)
            result = handler.execute(envelope.payload)
            if inspect.isawaitable(result):
                result = await result
        except HandlerNotFound as exc:
            logger.warning("Task %s: %s", envelope.id, exc)
            return TaskStatus.FAILED, str(exc)
        except Exception as exc:
            failure = HandlerExecutionFailure(envelope.type, exc)
            logger.warning(
                "Task %s (%s) failed on attempt %d: %s",
                envelope.id, envelope.type, delivery.retry_count + 1, failure,
            )
            return TaskStatus.FAILED, str(failure)
        return TaskStatus.COMPLETED, result

    async def _settle(self, delivery: Delivery, state: AttemptState) -> DeliveryOutcome:
        if state is AttemptState.SUCCEEDED:
            await self._broker.ack(delivery)
            return DeliveryOutcome.ACKED
        if delivery.retry_count < self.max_retries:
            await self._broker.retry(delivery)
            return DeliveryOutcome.RETRIED
        await self._broker.reject(delivery)
        return DeliveryOutcome.DEAD_LETTERED

    # -- Best-effort store access ----------------------------------------------

    async def _record(self, task_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._store.put(task_id, fields)
        except RedisError as exc:
            logger.warning("Status write for %s dropped: %s", task_id, exc)

    async def _broadcast(self, event: BroadcastEvent) -> None:
        try:
            await self._store.publish(event)
        except RedisError as exc:
            logger.warning("Broadcast %s for %s dropped: %s", event.status, event.id, exc)

    async def _report_queue_length(self) -> None:
        length = await self._broker.queue_length()
        try:
            await self._store.publish_queue_length(length)
        except RedisError as exc:
            logger.warning("Queue length gauge dropped: %s", exc)


def _advance(task_id: str, state: AttemptState) -> AttemptState:
    logger.debug("Task %s -> %s", task_id, state)
    return state
