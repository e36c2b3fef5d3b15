"""Handler interface for executable task types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class TaskHandler(ABC):
    """Base class for all task handlers.

    A handler interprets its own payload and signals failure by raising.
    It must not retry or touch queue state; the dispatcher owns both.
    """

    name: str = ""
    # Fields the submission boundary collects into the payload for this type
    payload_fields: tuple[str, ...] = ()

    @abstractmethod
    async def execute(self, payload: dict[str, Any]) -> Any:
        """Run the task and return a JSON-serialisable result."""
        ...
