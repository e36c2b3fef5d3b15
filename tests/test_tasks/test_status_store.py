"""Tests for the Redis-backed StatusStore (against an in-memory client)."""

from __future__ import annotations

import asyncio
import json

import pytest
from redis.exceptions import RedisError

from taskrelay.tasks.errors import StoreUnavailable
from taskrelay.tasks.models import BroadcastEvent, TaskStatus
from taskrelay.tasks.store import StatusStore
from tests.fakes import FakeRedis


@pytest.mark.asyncio
async def test_put_and_get(store: StatusStore, redis_client: FakeRedis):
    await store.put(
        "t1",
        {"type": "reverse_text_task", "status": "pending", "payload": json.dumps({"text": "abc"})},
    )
    assert "task:t1" in redis_client.hashes

    record = await store.get("t1")
    assert record is not None
    assert record.type == "reverse_text_task"
    assert record.status is TaskStatus.PENDING
    assert record.payload == {"text": "abc"}


@pytest.mark.asyncio
async def test_put_overwrites_fields(store: StatusStore):
    await store.put("t1", {"type": "x", "status": "pending"})
    await store.put("t1", {"status": "completed", "result": json.dumps("done")})
    record = await store.get("t1")
    assert record.type == "x"
    assert record.status is TaskStatus.COMPLETED
    assert record.result == "done"


@pytest.mark.asyncio
async def test_put_encodes_values_as_strings(store: StatusStore, redis_client: FakeRedis):
    await store.put("t1", {"timestamp": 123, "workerId": None, "payload": {"a": 1}})
    stored = redis_client.hashes["task:t1"]
    assert stored == {"timestamp": "123", "workerId": "", "payload": '{"a": 1}'}


@pytest.mark.asyncio
async def test_get_missing_returns_none(store: StatusStore):
    assert await store.get("nope") is None
    assert await store.get_field("nope", "status") is None
    assert await store.exists("nope") is False


@pytest.mark.asyncio
async def test_custom_prefix(redis_client: FakeRedis):
    store = StatusStore(redis_client, key_prefix="jobs/")
    await store.put("t1", {"status": "pending"})
    assert "jobs/t1" in redis_client.hashes
    assert await store.get_field("t1", "status") == "pending"


@pytest.mark.asyncio
async def test_publish_event_and_queue_length(store: StatusStore, redis_client: FakeRedis):
    event = BroadcastEvent(id="t1", type="x", status=TaskStatus.STARTED, worker_id="w")
    await store.publish(event)
    await store.publish_queue_length(7)

    assert redis_client.messages("task_updates") == [event.to_json()]
    assert redis_client.messages("queue_length") == ["7"]


@pytest.mark.asyncio
async def test_subscribe_yields_only_messages(store: StatusStore, redis_client: FakeRedis):
    received: list[str] = []

    async def consume():
        async for raw in store.subscribe():
            received.append(raw)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)  # let the subscription register

    await redis_client.publish("task_updates", "one")
    await redis_client.publish("queue_length", "3")  # other channel
    await redis_client.publish("task_updates", "two")
    redis_client.end_subscriptions()
    await asyncio.wait_for(consumer, timeout=1)

    assert received == ["one", "two"]
    assert redis_client.subscribers == []


@pytest.mark.asyncio
async def test_events_before_subscribing_are_missed(store: StatusStore, redis_client: FakeRedis):
    await redis_client.publish("task_updates", "early")
    received: list[str] = []

    async def consume():
        async for raw in store.subscribe():
            received.append(raw)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await redis_client.publish("task_updates", "late")
    redis_client.end_subscriptions()
    await asyncio.wait_for(consumer, timeout=1)

    assert received == ["late"]


@pytest.mark.asyncio
async def test_ping_failure_raises_store_unavailable():
    class DownRedis(FakeRedis):
        async def ping(self):
            raise RedisError("connection refused")

    store = StatusStore(DownRedis())
    with pytest.raises(StoreUnavailable, match="redis://x"):
        await store.ping("redis://x")


@pytest.mark.asyncio
async def test_close(store: StatusStore, redis_client: FakeRedis):
    await store.close()
    assert redis_client.closed
