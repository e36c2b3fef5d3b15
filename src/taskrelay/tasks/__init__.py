"""Task data model, error taxonomy, and the Redis-backed status store."""

from taskrelay.tasks.models import BroadcastEvent, Envelope, StatusRecord, TaskStatus
from taskrelay.tasks.store import StatusStore

__all__ = ["BroadcastEvent", "Envelope", "StatusRecord", "StatusStore", "TaskStatus"]
