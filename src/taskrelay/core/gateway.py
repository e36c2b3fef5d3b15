"""Submission gateway: accepts tasks, records them as pending, and enqueues them."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from taskrelay.tasks.errors import UnknownTaskType
from taskrelay.tasks.models import (
    BroadcastEvent,
    Envelope,
    TaskStatus,
    new_task_id,
    now_ms,
)

if TYPE_CHECKING:
    from taskrelay.broker.base import Broker
    from taskrelay.config.settings import Settings
    from taskrelay.handlers.registry import HandlerRegistry
    from taskrelay.tasks.store import StatusStore

logger = logging.getLogger("taskrelay.core.gateway")


@dataclass
class Submission:
    """Outcome of a submission as seen by the caller.

    ``status`` is the last status observed. For non-interactive types, or
    when the wait ran out, it stays ``pending`` and ``result`` is None; that
    means "still in flight", not "failed".
    """

    task_id: str
    type: str
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None

    @property
    def resolved(self) -> bool:
        return self.status.is_terminal


class SubmissionGateway:
    """Producer side of the pipeline.

    The store write, the pending broadcast, and the enqueue are not
    transactional: if the enqueue fails after the write, the pending record
    is left orphaned.
    """

    def __init__(
        self,
        store: StatusStore,
        broker: Broker,
        *,
        allowed_types: Iterable[str],
        interactive_types: Iterable[str] = (),
        poll_interval: float = 0.5,
        poll_timeout: float = 10.0,
        payload_fields: Mapping[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._store = store
        self._broker = broker
        self.allowed_types = frozenset(allowed_types)
        self.interactive_types = frozenset(interactive_types)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._payload_fields = dict(payload_fields or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: StatusStore,
        broker: Broker,
        registry: HandlerRegistry | None = None,
    ) -> SubmissionGateway:
        gw = settings.gateway
        fields = {}
        if registry is not None:
            fields = {name: registry.get(name).payload_fields for name in registry.names}
        return cls(
            store,
            broker,
            allowed_types=gw.allowed_types,
            interactive_types=gw.interactive_types,
            poll_interval=gw.poll_interval_seconds,
            poll_timeout=gw.poll_timeout_seconds,
            payload_fields=fields,
        )

    # -- Submission ------------------------------------------------------------

    def build_payload(self, task_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Pick the fields a task type expects out of a flat form mapping.

        Types without a declared field list take every field as-is.
        """
        if task_type not in self.allowed_types:
            raise UnknownTaskType(task_type)
        wanted = self._payload_fields.get(task_type)
        if not wanted:
            return dict(fields)
        return {name: fields.get(name) for name in wanted}

    async def submit(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        wait: bool | None = None,
    ) -> Submission:
        """Record, announce, and enqueue a task.

        With *wait* left as None, interactive types wait for a result and
        the rest return immediately.
        """
        if task_type not in self.allowed_types:
            logger.info("Rejected submission of unknown type %r", task_type)
            raise UnknownTaskType(task_type)

        task_id = new_task_id()
        timestamp = now_ms()

        await self._store.put(
            task_id,
            {
                "type": task_type,
                "status": TaskStatus.PENDING.value,
                "payload": json.dumps(payload),
                "timestamp": timestamp,
                "workerId": "",
            },
        )

        try:
            await self._store.publish(
                BroadcastEvent(
                    id=task_id,
                    type=task_type,
                    status=TaskStatus.PENDING,
                    timestamp=timestamp,
                )
            )
        except RedisError as exc:
            logger.warning("Pending broadcast for %s dropped: %s", task_id, exc)

        try:
            await self._broker.publish(Envelope(id=task_id, type=task_type, payload=payload))
        except Exception:
            logger.error("Enqueue failed; task %s left pending without a message", task_id)
            raise

        logger.info("Queued task %s (%s)", task_id, task_type)
        submission = Submission(task_id=task_id, type=task_type)

        if wait is None:
            wait = task_type in self.interactive_types
        if wait and self.poll_timeout > 0:
            submission.status, submission.result = await self.wait_for_result(task_id)
        return submission

    # -- Polling ---------------------------------------------------------------

    async def wait_for_result(
        self,
        task_id: str,
        timeout: float | None = None,
    ) -> tuple[TaskStatus, Any]:
        """Poll the stored status until it is terminal or the deadline passes."""
        timeout = self.poll_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        status = TaskStatus.PENDING
        while True:
            raw = await self._store.get_field(task_id, "status")
            if raw:
                status = TaskStatus(raw)
            if status.is_terminal:
                raw_result = await self._store.get_field(task_id, "result")
                return status, _decode_result(raw_result)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("Task %s still %s after %.1fs", task_id, status, timeout)
                return status, None
            await asyncio.sleep(min(self.poll_interval, remaining))


def _decode_result(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw
