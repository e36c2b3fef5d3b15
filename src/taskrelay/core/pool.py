"""Dispatcher pool — N independent dispatchers, each with its own broker connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import socket
from collections.abc import Callable
from typing import TYPE_CHECKING

from taskrelay.broker.base import connect_with_retry
from taskrelay.broker.kombu_broker import KombuBroker
from taskrelay.core.dispatcher import Dispatcher
from taskrelay.handlers.builtin import default_registry
from taskrelay.tasks.store import StatusStore

if TYPE_CHECKING:
    from taskrelay.broker.base import Broker
    from taskrelay.config.settings import Settings
    from taskrelay.handlers.registry import HandlerRegistry

logger = logging.getLogger("taskrelay.core.pool")

BrokerFactory = Callable[[int], "Broker"]


def worker_identity(index: int) -> str:
    """Worker id recorded as ``workerId``: ``<hostname>:<pid>:<index>``."""
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


class DispatcherPool:
    """Runs ``settings.dispatcher.concurrency`` dispatchers as asyncio tasks.

    Dispatchers share the status store and registry but never a broker
    connection, so each keeps its own prefetch of one message.
    """

    def __init__(
        self,
        settings: Settings,
        store: StatusStore,
        registry: HandlerRegistry,
        broker_factory: BrokerFactory | None = None,
        size: int | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._registry = registry
        self._broker_factory = broker_factory or self._kombu_factory
        self.size = size or settings.dispatcher.concurrency
        self._brokers: list[Broker] = []
        self._dispatchers: list[Dispatcher] = []
        self._tasks: list[asyncio.Task] = []

    def _kombu_factory(self, index: int) -> Broker:
        return KombuBroker(self._settings.broker, role=f"worker{index}")

    @property
    def dispatchers(self) -> list[Dispatcher]:
        return list(self._dispatchers)

    async def start(self) -> None:
        """Connect every dispatcher's broker, then start consuming."""
        broker_cfg = self._settings.broker
        dispatcher_cfg = self._settings.dispatcher

        for index in range(self.size):
            broker = self._broker_factory(index)
            await connect_with_retry(
                broker,
                attempts=broker_cfg.connect_attempts,
                delay=broker_cfg.connect_delay_seconds,
                url=getattr(broker, "url", ""),
            )
            self._brokers.append(broker)
            self._dispatchers.append(
                Dispatcher(
                    broker,
                    self._store,
                    self._registry,
                    worker_id=worker_identity(index),
                    max_retries=dispatcher_cfg.max_retries,
                    receive_timeout=dispatcher_cfg.receive_timeout_seconds,
                    reconnect_attempts=broker_cfg.connect_attempts,
                    reconnect_delay=broker_cfg.connect_delay_seconds,
                )
            )

        for index, dispatcher in enumerate(self._dispatchers):
            self._tasks.append(
                asyncio.create_task(dispatcher.run(), name=f"dispatcher-{index}")
            )
        logger.info("Started %d dispatcher(s)", len(self._tasks))

    async def wait(self) -> None:
        """Block until every dispatcher has exited; re-raises the first crash."""
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        """Let each dispatcher finish its current delivery, then close brokers."""
        for dispatcher in self._dispatchers:
            dispatcher.stop()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error("Dispatcher exited with error: %s", result)
        for broker in self._brokers:
            try:
                await broker.close()
            except Exception:
                logger.exception("Error closing broker connection")
        self._tasks.clear()
        self._dispatchers.clear()
        self._brokers.clear()
        logger.info("Dispatcher pool stopped")


async def run_workers(settings: Settings, registry: HandlerRegistry | None = None) -> None:
    """Worker process entry point: run the pool until SIGINT/SIGTERM or a crash."""
    registry = registry or default_registry(settings.handlers.latency_seconds)
    registry.validate_against(settings.gateway.allowed_types)

    store = StatusStore.from_url(
        settings.store.url,
        key_prefix=settings.store.key_prefix,
        updates_channel=settings.store.updates_channel,
        queue_length_channel=settings.store.queue_length_channel,
    )
    await store.ping(settings.store.url)

    pool = DispatcherPool(settings, store, registry)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    try:
        await pool.start()
        stopper = asyncio.create_task(stop_requested.wait(), name="stop-signal")
        runner = asyncio.create_task(pool.wait(), name="dispatcher-pool")
        done, _ = await asyncio.wait({stopper, runner}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if runner in done:
            # Dispatchers only exit on their own when reconnecting failed.
            runner.result()
        else:
            logger.info("Shutdown requested")
    finally:
        await pool.stop()
        await store.close()
