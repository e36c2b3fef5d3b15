"""Error taxonomy for submission, dispatch, and infrastructure failures."""

from __future__ import annotations


class TaskRelayError(Exception):
    """Base class for all taskrelay errors."""


class UnknownTaskType(TaskRelayError):
    """Submission rejected: the type is not on the gateway allow-list."""

    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(f"Unknown task type: {task_type}")


class HandlerNotFound(TaskRelayError):
    """An envelope names a type the dispatcher's registry does not have."""

    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(f"No handler for task type: {task_type}")


class HandlerExecutionFailure(TaskRelayError):
    """A handler raised while executing a task.

    The message is the handler error's own text, which becomes the
    stored ``result`` of a failed task.
    """

    def __init__(self, task_type: str, cause: BaseException) -> None:
        self.task_type = task_type
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)


class BrokerUnavailable(TaskRelayError):
    """The durable queue could not be reached within the allowed attempts."""

    def __init__(self, url: str, attempts: int) -> None:
        self.url = url
        self.attempts = attempts
        super().__init__(f"Could not connect to broker at {url} after {attempts} attempts")


class StoreUnavailable(TaskRelayError):
    """The status store did not answer at startup."""

    def __init__(self, url: str, reason: str = "") -> None:
        self.url = url
        detail = f": {reason}" if reason else ""
        super().__init__(f"Could not reach status store at {url}{detail}")


class RegistryMismatch(TaskRelayError):
    """Handler registry and gateway allow-list disagree."""

    def __init__(self, missing: list[str], unexpected: list[str]) -> None:
        self.missing = missing
        self.unexpected = unexpected
        parts = []
        if missing:
            parts.append(f"allowed but unregistered: {', '.join(missing)}")
        if unexpected:
            parts.append(f"registered but not allowed: {', '.join(unexpected)}")
        super().__init__("Handler registry does not match allow-list (" + "; ".join(parts) + ")")


class BrokerConnectionError(TaskRelayError):
    """A single broker call failed because the connection is gone."""
