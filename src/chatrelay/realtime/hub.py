"""Broadcast hub for real-time observers.

The hub owns the observer set. publish() may be called from request
handlers and from media worker threads alike; it serializes the envelope
once and hands the same text to every observer. An observer whose send
raises is logged and dropped.
"""

import asyncio
import json
import threading
from typing import Any, Protocol

from chatrelay.observability.logging import get_logger

logger = get_logger(__name__)

EVENT_MESSAGE_INCOMING = "message_incoming"
EVENT_MESSAGE_OUTGOING = "message_outgoing"
EVENT_MESSAGE_MEDIA_UPDATED = "message_media_updated"
EVENT_MESSAGE_DELETED = "message_deleted"


class Observer(Protocol):
    def send(self, text: str) -> None:
        """Deliver one serialized envelope. Raises if the observer is gone."""
        ...


class BroadcastHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._observers: set[Observer] = set()

    def register(self, observer: Observer) -> None:
        with self._lock:
            self._observers.add(observer)
        logger.info("observer registered", extra={"extra_fields": {"observers": len(self)}})

    def unregister(self, observer: Observer) -> None:
        with self._lock:
            self._observers.discard(observer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def publish(self, event: str, data: Any) -> int:
        """Send ``{"event": event, "data": data}`` to every observer.

        Returns the number of observers that accepted the envelope.
        Never raises because of an observer.
        """
        text = json.dumps({"event": event, "data": data}, default=str)

        # Send outside the lock; observers may block briefly.
        with self._lock:
            observers = list(self._observers)

        delivered = 0
        for observer in observers:
            try:
                observer.send(text)
            except Exception as exc:
                logger.warning(
                    "observer send failed, removing",
                    extra={"extra_fields": {"event": event, "error_type": type(exc).__name__}},
                )
                self.unregister(observer)
                continue
            delivered += 1
        return delivered


class ObserverClosed(Exception):
    """Raised by WebSocketObserver.send after the connection has gone."""


class WebSocketObserver:
    """Thread-safe bridge from publish() to one WebSocket connection.

    send() only schedules the text onto the connection's event loop; the
    connection task drains the queue with next_message(). Once the
    observer closes, whether by close() or by queue overflow, a pending
    or later next_message() raises ObserverClosed and queued text is
    dropped. close() must be called on the connection's loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 256) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._closed_event = asyncio.Event()
        self.closed = False

    def _put(self, text: str) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("observer queue full, closing")
            self.close()

    def send(self, text: str) -> None:
        if self.closed or self._loop.is_closed():
            raise ObserverClosed("observer closed")
        self._loop.call_soon_threadsafe(self._put, text)

    async def next_message(self) -> str:
        if self.closed:
            raise ObserverClosed("observer closed")
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            closer.cancel()
        if self.closed:
            raise ObserverClosed("observer closed")
        return getter.result()

    def close(self) -> None:
        self.closed = True
        self._closed_event.set()
