"""WebSocket live view — relays task status broadcasts to connected observers."""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError

from taskrelay.tasks.store import StatusStore

logger = logging.getLogger("taskrelay.server.ws")

ws_router = APIRouter()


async def relay_updates(websocket: WebSocket, store: StatusStore) -> int:
    """Forward every ``task_updates`` message verbatim until the client leaves.

    Read-only: nothing here writes to the store. Returns the number of
    events relayed.
    """
    relayed = 0
    async for raw in store.subscribe():
        await websocket.send_text(raw)
        relayed += 1
    return relayed


@ws_router.websocket("/ws/tasks")
async def task_updates_websocket(websocket: WebSocket) -> None:
    await websocket.accept()
    store = websocket.app.state.store
    try:
        await relay_updates(websocket, store)
    except WebSocketDisconnect:
        logger.debug("Live-view client disconnected")
    except RedisError as exc:
        logger.error("Live-view subscription failed: %s", exc)
        await websocket.close(code=1011)
