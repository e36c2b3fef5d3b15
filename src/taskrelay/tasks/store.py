"""Redis persistence for task status records plus the pub/sub broadcast bus."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from taskrelay.config.constants import (
    QUEUE_LENGTH_CHANNEL,
    TASK_KEY_PREFIX,
    TASK_UPDATES_CHANNEL,
)
from taskrelay.tasks.errors import StoreUnavailable
from taskrelay.tasks.models import BroadcastEvent, StatusRecord

logger = logging.getLogger("taskrelay.tasks.store")


class StatusStore:
    """Latest-state records keyed by task id, and a fan-out event bus.

    Two access patterns share one Redis connection: hashes at
    ``<prefix><id>`` for durable point reads, and pub/sub channels for
    best-effort push notifications. Writes and publishes are not coupled;
    the stored record is the source of truth.
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = TASK_KEY_PREFIX,
        updates_channel: str = TASK_UPDATES_CHANNEL,
        queue_length_channel: str = QUEUE_LENGTH_CHANNEL,
    ) -> None:
        self._redis = client
        self._key_prefix = key_prefix
        self.updates_channel = updates_channel
        self.queue_length_channel = queue_length_channel

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> StatusStore:
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def key(self, task_id: str) -> str:
        return f"{self._key_prefix}{task_id}"

    # -- Lifecycle -------------------------------------------------------------

    async def ping(self, url: str = "") -> None:
        """Fail fast at startup when Redis is unreachable."""
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise StoreUnavailable(url, str(exc)) from exc

    async def close(self) -> None:
        await self._redis.aclose()

    # -- Keyed records ---------------------------------------------------------

    async def put(self, task_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the given fields of a task's record (last write wins)."""
        mapping = {k: _encode_field(v) for k, v in fields.items()}
        await self._redis.hset(self.key(task_id), mapping=mapping)

    async def get_field(self, task_id: str, field: str) -> str | None:
        return await self._redis.hget(self.key(task_id), field)

    async def get(self, task_id: str) -> StatusRecord | None:
        data = await self._redis.hgetall(self.key(task_id))
        if not data:
            return None
        return StatusRecord.from_hash(data)

    async def exists(self, task_id: str) -> bool:
        return bool(await self._redis.exists(self.key(task_id)))

    # -- Broadcast bus ---------------------------------------------------------

    async def publish(self, event: BroadcastEvent) -> int:
        """Publish a status event; returns the number of live subscribers."""
        return await self._redis.publish(self.updates_channel, event.to_json())

    async def publish_queue_length(self, length: int) -> int:
        return await self._redis.publish(self.queue_length_channel, str(length))

    async def subscribe(self, channel: str | None = None) -> AsyncIterator[str]:
        """Yield raw messages from *channel* (default: task updates) until cancelled."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel or self.updates_channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield message["data"]
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()


def _encode_field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool | dict | list):
        return json.dumps(value)
    return str(value)
