"""Task handler plugins and the registry the dispatcher looks them up in."""

from taskrelay.handlers.base import TaskHandler
from taskrelay.handlers.builtin import default_registry
from taskrelay.handlers.registry import HandlerRegistry

__all__ = ["HandlerRegistry", "TaskHandler", "default_registry"]
