"""Health and status endpoints."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from taskrelay import __version__
from taskrelay.tasks.errors import BrokerConnectionError

logger = logging.getLogger("taskrelay.server.health")

health_router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class StatusResponse(BaseModel):
    version: str
    started_at: str
    queue: str
    queue_length: int | None = None
    allowed_types: list[str]
    interactive_types: list[str]
    embedded_workers: int
    server_host: str
    server_port: int


@health_router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    started_at = getattr(request.app.state, "started_at", datetime.now(UTC))
    uptime = (datetime.now(UTC) - started_at).total_seconds()
    return HealthResponse(
        status="ok",
        version=__version__,
        uptime_seconds=round(uptime, 1),
    )


@health_router.get("/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    settings = request.app.state.settings
    started_at = getattr(request.app.state, "started_at", datetime.now(UTC))

    # Queue depth is informational; a broker hiccup should not fail the endpoint
    queue_length = None
    broker = getattr(request.app.state, "broker", None)
    if broker is not None:
        try:
            queue_length = await broker.queue_length()
        except BrokerConnectionError as exc:
            logger.warning("Could not read queue length: %s", exc)

    return StatusResponse(
        version=__version__,
        started_at=started_at.isoformat(),
        queue=settings.broker.queue,
        queue_length=queue_length,
        allowed_types=list(settings.gateway.allowed_types),
        interactive_types=list(settings.gateway.interactive_types),
        embedded_workers=settings.server.embedded_workers,
        server_host=settings.server.host,
        server_port=settings.server.port,
    )
