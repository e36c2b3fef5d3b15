"""Core pipeline: submission gateway, dispatcher, and dispatcher pool."""

from taskrelay.core.dispatcher import DeliveryOutcome, Dispatcher
from taskrelay.core.gateway import Submission, SubmissionGateway
from taskrelay.core.pool import DispatcherPool, run_workers, worker_identity

__all__ = [
    "DeliveryOutcome",
    "Dispatcher",
    "DispatcherPool",
    "Submission",
    "SubmissionGateway",
    "run_workers",
    "worker_identity",
]
