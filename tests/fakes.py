"""In-memory stand-ins for Redis and the durable queue used across tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError

from taskrelay.broker.base import Broker, Delivery, parse_retry_count
from taskrelay.config.constants import RETRY_HEADER
from taskrelay.tasks.errors import BrokerConnectionError
from taskrelay.tasks.models import Envelope


class FakePubSub:
    """Minimal ``redis.asyncio.client.PubSub`` look-alike."""

    def __init__(self, server: FakeRedis) -> None:
        self._server = server
        self.channels: set[str] = set()
        self._queue: asyncio.Queue | None = None
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        self._queue = asyncio.Queue()
        self.channels.update(channels)
        self._server.subscribers.append(self)
        for channel in channels:
            self._queue.put_nowait({"type": "subscribe", "channel": channel, "data": 1})

    def deliver(self, message: dict[str, Any] | None) -> None:
        if self._queue is not None:
            self._queue.put_nowait(message)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message

    async def unsubscribe(self, *channels: str) -> None:
        self.channels.clear()
        if self in self._server.subscribers:
            self._server.subscribers.remove(self)

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """Hash + pub/sub subset of ``redis.asyncio.Redis`` (decode_responses=True).

    ``writes`` keeps every hset mapping per key, in order, so tests can check
    the sequence of statuses a task went through.
    """

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.writes: dict[str, list[dict[str, str]]] = defaultdict(list)
        self.published: list[tuple[str, str]] = []
        self.subscribers: list[FakePubSub] = []
        self.fail_writes = False
        self.fail_publish = False
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def hset(self, key: str, mapping: dict[str, Any]) -> int:
        if self.fail_writes:
            raise RedisConnectionError("redis down")
        values = {k: str(v) for k, v in mapping.items()}
        self.writes[key].append(values)
        existing = self.hashes.setdefault(key, {})
        added = len(set(values) - set(existing))
        existing.update(values)
        return added

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.hashes)

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            raise RedisConnectionError("redis down")
        self.published.append((channel, message))
        receivers = [sub for sub in self.subscribers if channel in sub.channels]
        for sub in receivers:
            sub.deliver({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    def end_subscriptions(self) -> None:
        """Make every open ``listen()`` loop finish."""
        for sub in list(self.subscribers):
            sub.deliver(None)

    async def aclose(self) -> None:
        self.closed = True

    # -- Test helpers ----------------------------------------------------------

    def statuses(self, key: str) -> list[str]:
        return [w["status"] for w in self.writes.get(key, []) if "status" in w]

    def messages(self, channel: str) -> list[str]:
        return [m for c, m in self.published if c == channel]


class FakeBroker(Broker):
    """Durable queue with a dead-letter list, recording every delivery attempt."""

    url = "amqp://fake//"

    def __init__(self, connect_failures: int = 0) -> None:
        self.queue: deque[tuple[bytes, dict[str, Any]]] = deque()
        self.dead_letters: list[tuple[bytes, dict[str, Any]]] = []
        self.deliveries: list[Delivery] = []
        self.acked: list[Delivery] = []
        self.retried: list[Delivery] = []
        self.rejected: list[Delivery] = []
        self.connect_failures = connect_failures
        self.connect_calls = 0
        self.connected = False
        self.closed = False
        self.fail_publish = False
        self.on_idle = None  # called when receive() finds the queue empty

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise BrokerConnectionError("connection refused")
        self.connected = True

    async def close(self) -> None:
        self.connected = False
        self.closed = True

    async def publish(self, envelope: Envelope, retry_count: int = 0) -> None:
        if self.fail_publish:
            raise BrokerConnectionError("channel closed")
        self.queue.append((envelope.encode(), {RETRY_HEADER: retry_count}))

    async def receive(self, timeout: float) -> Delivery | None:
        if not self.queue:
            if self.on_idle is not None:
                self.on_idle()
            await asyncio.sleep(min(timeout, 0.005))
            return None
        body, headers = self.queue.popleft()
        delivery = Delivery(
            envelope=Envelope.decode(body),
            body=body,
            retry_count=parse_retry_count(headers, RETRY_HEADER),
            headers=dict(headers),
            handle=object(),
        )
        self.deliveries.append(delivery)
        return delivery

    async def ack(self, delivery: Delivery) -> None:
        self.acked.append(delivery)

    async def retry(self, delivery: Delivery) -> None:
        self.acked.append(delivery)
        self.retried.append(delivery)
        headers = {**delivery.headers, RETRY_HEADER: delivery.retry_count + 1}
        self.queue.append((delivery.body, headers))

    async def reject(self, delivery: Delivery) -> None:
        self.rejected.append(delivery)
        self.dead_letters.append((delivery.body, delivery.headers))

    async def queue_length(self) -> int:
        return len(self.queue)


async def drain(dispatcher, broker: FakeBroker) -> list:
    """Process everything in *broker* (including retries) and return the outcomes."""
    outcomes = []
    while broker.queue:
        delivery = await broker.receive(0)
        outcomes.append(await dispatcher.process(delivery))
    return outcomes
