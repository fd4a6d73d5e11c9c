"""Progress WebSocket — relays the progress channel to connected frontends.

Path: /ws/progress

The relay is one more independent listener on the channel.  Each client
gets its own queue so a slow client never delays delivery to the others
or to the in-process listeners.  A client whose queue overflows is
dropped: its queue is replaced by a single close marker and its
connection is closed with code 1013 (try again later).

Clients may send "ping" and get "pong".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from mathlens.domain.events import (
    ChannelMessage,
    ProgressEvent,
    RecognitionStarted,
    StageFailed,
    StageRetrying,
)
from mathlens.events.channel import ProgressChannel, Subscription

logger = logging.getLogger(__name__)

# Queue marker telling a client's pump to close the connection.
_CLOSE = None

_MESSAGE_TYPES = {
    ProgressEvent: "progress",
    RecognitionStarted: "started",
    StageFailed: "failed",
    StageRetrying: "retrying",
}


def message_to_payload(message: ChannelMessage) -> dict[str, Any]:
    return {
        "type": _MESSAGE_TYPES[type(message)],
        **message.model_dump(mode="json", exclude_none=True),
    }


class ProgressRelay:
    """Tracks connected frontend clients and fans channel messages out to them."""

    def __init__(self, channel: ProgressChannel, max_queue: int = 256) -> None:
        self._channel = channel
        self._max_queue = max_queue
        self._clients: dict[WebSocket, asyncio.Queue] = {}
        self._subscription: Subscription | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._channel.subscribe(self._on_message)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ── Client management ────────────────────────────────────────────

    async def connect(self, ws: WebSocket) -> asyncio.Queue:
        await ws.accept()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._clients[ws] = queue
        logger.info("Progress client connected (%d total)", len(self._clients))
        return queue

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.pop(ws, None)
        logger.info("Progress client disconnected (%d remaining)", len(self._clients))

    # ── Fan-out ──────────────────────────────────────────────────────

    def _on_message(self, message: ChannelMessage) -> None:
        payload = message_to_payload(message)
        for ws, queue in list(self._clients.items()):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning("Progress client queue full; dropping client")
                self._clients.pop(ws, None)
                self._evict(queue)

    @staticmethod
    def _evict(queue: asyncio.Queue) -> None:
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(_CLOSE)


# ── WebSocket endpoint ───────────────────────────────────────────────────


def create_progress_router(relay: ProgressRelay) -> APIRouter:
    """Factory that creates the progress WebSocket endpoint."""

    router = APIRouter()

    @router.websocket("/ws/progress")
    async def progress_ws(websocket: WebSocket) -> None:
        queue = await relay.connect(websocket)

        async def pump() -> None:
            while True:
                payload = await queue.get()
                if payload is _CLOSE:
                    await websocket.close(code=1013)
                    return
                await websocket.send_json(payload)

        async def receive() -> None:
            while True:
                data = await websocket.receive_text()
                if data.strip().lower() == "ping":
                    await websocket.send_text("pong")

        tasks = [asyncio.create_task(pump()), asyncio.create_task(receive())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.warning("Progress connection closed: %s", exc)
        finally:
            for task in tasks:
                task.cancel()
            relay.disconnect(websocket)

    return router
