"""Application lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from taskrelay.broker.base import connect_with_retry
from taskrelay.broker.kombu_broker import KombuBroker
from taskrelay.core.gateway import SubmissionGateway
from taskrelay.core.pool import DispatcherPool
from taskrelay.tasks.store import StatusStore

logger = logging.getLogger("taskrelay.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect shared services once, hand them to the gateway, tear down on exit."""
    settings = app.state.settings
    registry = app.state.registry

    # --- Startup ---
    registry.validate_against(settings.gateway.allowed_types)

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = StatusStore.from_url(
            settings.store.url,
            key_prefix=settings.store.key_prefix,
            updates_channel=settings.store.updates_channel,
            queue_length_channel=settings.store.queue_length_channel,
        )
    store = app.state.store
    await store.ping(settings.store.url)

    owns_broker = app.state.broker is None
    if owns_broker:
        broker = KombuBroker(settings.broker, role="gateway")
        await connect_with_retry(
            broker,
            attempts=settings.broker.connect_attempts,
            delay=settings.broker.connect_delay_seconds,
            url=broker.url,
        )
        app.state.broker = broker
    broker = app.state.broker

    app.state.gateway = SubmissionGateway.from_settings(settings, store, broker, registry)

    pool = None
    if settings.server.embedded_workers > 0:
        pool = DispatcherPool(settings, store, registry, size=settings.server.embedded_workers)
        await pool.start()
    app.state.pool = pool

    logger.info(
        "Taskrelay server starting: host=%s, port=%d, types=%s",
        settings.server.host,
        settings.server.port,
        ", ".join(registry.names),
    )
    app.state.started_at = datetime.now(UTC)

    yield

    # --- Shutdown ---
    if pool is not None:
        await pool.stop()
    if owns_broker:
        await broker.close()
    if owns_store:
        await store.close()

    logger.info("Taskrelay server shutting down.")
