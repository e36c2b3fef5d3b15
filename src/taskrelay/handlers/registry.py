"""Static registry mapping task-type names to handlers."""

from __future__ import annotations

from collections.abc import Iterable

from taskrelay.handlers.base import TaskHandler
from taskrelay.tasks.errors import HandlerNotFound, RegistryMismatch


class HandlerRegistry:
    """Registry of task handlers, built once at startup."""

    def __init__(self, handlers: Iterable[TaskHandler] = ()) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: TaskHandler) -> None:
        """Register a handler under its ``name``."""
        if not handler.name:
            raise ValueError(f"{type(handler).__name__} has no name")
        if handler.name in self._handlers:
            raise ValueError(f"Handler already registered: {handler.name}")
        self._handlers[handler.name] = handler

    def get(self, name: str) -> TaskHandler:
        """Look up a handler; raises HandlerNotFound for unknown types."""
        try:
            return self._handlers[name]
        except KeyError:
            raise HandlerNotFound(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def names(self) -> list[str]:
        """Registered type names, in registration order."""
        return list(self._handlers.keys())

    def validate_against(self, allowed: Iterable[str]) -> None:
        """Ensure the gateway allow-list and this registry name the same types."""
        allowed_set = set(allowed)
        registered = set(self._handlers)
        missing = sorted(allowed_set - registered)
        unexpected = sorted(registered - allowed_set)
        if missing or unexpected:
            raise RegistryMismatch(missing, unexpected)
