"""FastAPI application factory."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from taskrelay import __version__
from taskrelay.handlers.builtin import default_registry
from taskrelay.server.lifespan import lifespan
from taskrelay.server.routes.health import health_router
from taskrelay.server.routes.tasks import tasks_router
from taskrelay.server.routes.ws import ws_router

if TYPE_CHECKING:
    from taskrelay.broker.base import Broker
    from taskrelay.config.settings import Settings
    from taskrelay.handlers.registry import HandlerRegistry
    from taskrelay.tasks.store import StatusStore

logger = logging.getLogger("taskrelay.server")


def create_app(
    settings: Settings,
    *,
    store: StatusStore | None = None,
    broker: Broker | None = None,
    registry: HandlerRegistry | None = None,
) -> FastAPI:
    """Build the HTTP submission boundary.

    Store and broker are created and connected by the lifespan unless
    passed in; passed-in services are used as-is and not closed on shutdown.
    """
    app = FastAPI(
        title="Taskrelay",
        version=__version__,
        description="Submit tasks and watch them move through the dispatch pipeline",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry or default_registry(settings.handlers.latency_seconds)
    app.state.store = store
    app.state.broker = broker

    app.include_router(health_router)
    app.include_router(tasks_router)
    app.include_router(ws_router)
    return app
