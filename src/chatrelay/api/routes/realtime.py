"""Real-time channel: one WebSocket per observer, server push only."""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatrelay.observability.logging import get_logger
from chatrelay.realtime.hub import BroadcastHub, ObserverClosed, WebSocketObserver

router = APIRouter(tags=["realtime"])

logger = get_logger(__name__)

# "Try again later": the client fell behind and should reconnect.
OVERFLOW_CLOSE_CODE = 1013


async def _pump(websocket: WebSocket, observer: WebSocketObserver) -> None:
    while True:
        try:
            text = await observer.next_message()
        except ObserverClosed:
            logger.info("closing lagging websocket")
            await websocket.close(code=OVERFLOW_CLOSE_CODE)
            return
        await websocket.send_text(text)


async def _drain_client(websocket: WebSocket) -> None:
    # Client frames carry no meaning; reading them surfaces disconnects.
    while True:
        await websocket.receive_text()


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    hub: BroadcastHub = websocket.app.state.hub

    # Registered before accept so nothing published after the handshake is missed.
    observer = WebSocketObserver(asyncio.get_running_loop())
    hub.register(observer)
    try:
        await websocket.accept()
    except Exception:
        hub.unregister(observer)
        raise

    tasks = [
        asyncio.create_task(_pump(websocket, observer)),
        asyncio.create_task(_drain_client(websocket)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "websocket closed with error",
                    extra={"extra_fields": {"error_type": type(exc).__name__}},
                )
    finally:
        observer.close()
        hub.unregister(observer)
        for task in tasks:
            task.cancel()
