"""Submission and lookup endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict

from taskrelay.tasks.errors import BrokerConnectionError, UnknownTaskType
from taskrelay.tasks.models import TaskStatus

logger = logging.getLogger("taskrelay.server.tasks")

tasks_router = APIRouter(tags=["Tasks"])


class SubmitRequest(BaseModel):
    """A task submission.

    Either send ``payload`` directly, or send the type's fields flat next to
    ``type`` (as an HTML form would) and let the gateway pick them.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    payload: dict[str, Any] | None = None


class SubmitResponse(BaseModel):
    task_id: str
    type: str
    status: TaskStatus
    resolved: bool
    result: Any = None
    message: str


class TaskRecordResponse(BaseModel):
    task_id: str
    type: str
    status: TaskStatus
    payload: Any = None
    result: Any = None
    timestamp: int | None = None
    worker_id: str | None = None


@tasks_router.post(
    "/tasks",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_task(body: SubmitRequest, request: Request) -> SubmitResponse:
    gateway = request.app.state.gateway

    try:
        payload = body.payload
        if payload is None:
            payload = gateway.build_payload(body.type, body.model_extra or {})
        submission = await gateway.submit(body.type, payload)
    except UnknownTaskType as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BrokerConnectionError as exc:
        logger.error("Submission of %s failed: %s", body.type, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task queue unavailable",
        ) from exc

    return SubmitResponse(
        task_id=submission.task_id,
        type=submission.type,
        status=submission.status,
        resolved=submission.resolved,
        result=submission.result,
        message=f"Task queued (ID={submission.task_id}).",
    )


@tasks_router.get("/tasks/{task_id}", response_model=TaskRecordResponse)
async def get_task(task_id: str, request: Request) -> TaskRecordResponse:
    record = await request.app.state.store.get(task_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return TaskRecordResponse(
        task_id=task_id,
        type=record.type,
        status=record.status,
        payload=record.payload,
        result=record.result,
        timestamp=record.timestamp,
        worker_id=record.worker_id,
    )
