"""Pydantic models for tasks as they move through the queue and the store."""

from __future__ import annotations

import json
import time
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    """Lifecycle states for a dispatched task."""

    PENDING = "pending"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def new_task_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


class Envelope(BaseModel):
    """The message body carried through the durable queue.

    The retry counter is not part of the body; it travels in message headers
    so that retries republish the exact same bytes.
    """

    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def encode(self) -> bytes:
        return json.dumps(
            {"id": self.id, "type": self.type, "payload": self.payload},
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def decode(cls, body: bytes | str) -> Envelope:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return cls.model_validate_json(body)


class StatusRecord(BaseModel):
    """Latest known state of a task, stored as a hash at ``task:<id>``."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = ""
    status: TaskStatus = TaskStatus.PENDING
    payload: Any = None
    result: Any = None
    timestamp: int | None = None
    worker_id: str | None = Field(default=None, alias="workerId")

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> StatusRecord:
        """Build a record from raw hash fields (JSON-encoded payload/result)."""
        return cls(
            type=data.get("type", ""),
            status=data.get("status", TaskStatus.PENDING),
            payload=_loads(data.get("payload")),
            result=_loads(data.get("result")),
            timestamp=int(data["timestamp"]) if data.get("timestamp") else None,
            worker_id=data.get("workerId") or None,
        )


class BroadcastEvent(BaseModel):
    """Ephemeral notification published on the ``task_updates`` channel."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    status: TaskStatus
    timestamp: int = Field(default_factory=now_ms)
    worker_id: str | None = Field(default=None, alias="workerId")
    result: Any = None

    def to_json(self) -> str:
        data = self.model_dump(by_alias=True)
        # Only terminal events carry a result, and they always carry one.
        if not self.status.is_terminal:
            data.pop("result", None)
        # Results that are not JSON-native are sent as their str(), as in the record.
        return json.dumps(data, default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> BroadcastEvent:
        return cls.model_validate_json(raw)


def _loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw
