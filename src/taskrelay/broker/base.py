"""Durable queue interface used by the gateway and the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from taskrelay.tasks.errors import BrokerConnectionError, BrokerUnavailable
from taskrelay.tasks.models import Envelope

logger = logging.getLogger("taskrelay.broker.base")


@dataclass
class Delivery:
    """One received message, held until it is acked, retried, or rejected."""

    envelope: Envelope
    body: bytes  # exact bytes as received; republished verbatim on retry
    retry_count: int = 0
    headers: dict[str, Any] = field(default_factory=dict)
    handle: Any = field(default=None, repr=False)  # transport message object


class Broker(ABC):
    """Base class for durable queue adapters.

    Implementations must give explicit acknowledgement, at most one
    unacknowledged message per consumer, persistent publishes, and
    dead-lettering of messages rejected without requeue. Calls that fail
    because the connection dropped raise BrokerConnectionError.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and declare the queue topology."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def publish(self, envelope: Envelope, retry_count: int = 0) -> None:
        """Enqueue an envelope as a persistent message."""
        ...

    @abstractmethod
    async def receive(self, timeout: float) -> Delivery | None:
        """Wait up to *timeout* seconds for the next message."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def retry(self, delivery: Delivery) -> None:
        """Ack, then re-enqueue the same body with the retry counter bumped."""
        ...

    @abstractmethod
    async def reject(self, delivery: Delivery) -> None:
        """Reject without requeue so the broker dead-letters the message."""
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        """Messages ready in the work queue."""
        ...


def parse_retry_count(headers: dict[str, Any] | None, header: str) -> int:
    """Read the retry counter from message headers, defaulting to 0."""
    if not headers:
        return 0
    try:
        value = int(headers.get(header, 0))
    except (TypeError, ValueError):
        return 0
    return max(value, 0)


async def connect_with_retry(
    broker: Broker,
    *,
    attempts: int,
    delay: float,
    url: str = "",
) -> Broker:
    """Connect *broker*, retrying with a fixed delay.

    Raises BrokerUnavailable once *attempts* connection attempts have failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            await broker.connect()
        except BrokerConnectionError as exc:
            logger.warning(
                "Broker not ready (attempt %d/%d), retrying in %.1fs: %s",
                attempt, attempts, delay, exc,
            )
            if attempt < attempts:
                await asyncio.sleep(delay)
            continue
        logger.info("Connected to broker at %s", url or "<configured url>")
        return broker
    raise BrokerUnavailable(url, attempts)
