"""
Live broadcast of accepted check-ins.

WS /live/check-ins streams `{"topic": "check-ins", "data": {id, emotion,
intensity, region, timestamp}}` for every check-in accepted while the socket
is open. Nothing is replayed; anything the client sends is ignored.
"""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/live", tags=["live"])


@router.websocket("/check-ins")
async def live_check_ins(websocket: WebSocket):
    broadcaster = websocket.app.state.container.broadcaster
    # Subscribe before accepting so nothing published after the handshake is missed.
    listener_id, queue = broadcaster.subscribe()

    async def pump():
        while True:
            await websocket.send_json(await queue.get())

    async def until_disconnect():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks: set[asyncio.Task] = set()
    try:
        await websocket.accept()
        logger.info(
            "Live listener connected",
            extra={"action": "live_connected", "context": {"listener_id": listener_id}},
        )
        tasks = {asyncio.create_task(pump()), asyncio.create_task(until_disconnect())}
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    "Live listener dropped",
                    exc_info=task.exception(),
                    extra={"action": "live_failed", "context": {"listener_id": listener_id}},
                )
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        broadcaster.unsubscribe(listener_id)
        logger.info(
            "Live listener disconnected",
            extra={"action": "live_disconnected", "context": {"listener_id": listener_id}},
        )
